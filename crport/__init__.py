#!/usr/bin/env python3
# CUI // SP-CTI
"""crport: Go to Crystal translation toolkit."""

__version__ = "0.1.0"
