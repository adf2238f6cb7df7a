"""Entities, errors and primitives shared by every otcx layer."""
