"""Octopus: turn an instruction into an ordered run of tool steps and execute it."""

__version__ = "0.1.0"
