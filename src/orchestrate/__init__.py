# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Playbook orchestration engine for infrastructure automation."""

__version__ = "0.3.0"
