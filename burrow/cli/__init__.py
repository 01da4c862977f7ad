"""Burrow command-line interface."""
