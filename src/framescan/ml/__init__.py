"""Classifier core: model store, backend selection, tensor building, ranking."""
