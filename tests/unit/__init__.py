"""Unit tests for the loadgate engine building blocks."""
