"""Logging and metrics for kubephase."""
