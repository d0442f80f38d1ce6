# Copyright (c) 2024 Portafs Contributors
# MIT License

"""Portafs release metadata."""

from __future__ import annotations

__version__ = "0.3.0"
__author__ = "Portafs Contributors"
__codename__ = "Keystone"

# Version info tuple for programmatic comparison
VERSION_INFO = (0, 3, 0)
