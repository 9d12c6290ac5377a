"""Embedding, similarity and random-forest components."""
