# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Main entry point for running orchestrate as a module."""

from orchestrate.cli import main

if __name__ == "__main__":
    main()
