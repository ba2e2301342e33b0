"""Test doubles for the worker process."""
