# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delayed email reminder dispatcher with quota-aware multi-provider delivery."""

__version__ = "0.3.0"
