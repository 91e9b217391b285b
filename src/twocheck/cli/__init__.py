# SPDX-License-Identifier: MIT
# Copyright (c) 2026 Ourochronos Contributors

"""2-Check CLI - configuration checks and local simulation."""

from .main import app, main

__all__ = ["main", "app"]
