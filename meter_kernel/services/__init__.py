"""Kernel service base class."""
