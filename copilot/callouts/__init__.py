"""Callouts: question detection, debounce scheduling and suggested responses."""
