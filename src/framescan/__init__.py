"""framescan: single-frame image classification on ONNX Runtime."""
