"""Pydantic request/response models for the REST control surface."""
