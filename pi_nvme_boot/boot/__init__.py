"""Editors for the destination boot configuration."""
