# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Static CLI sub-commands."""
