# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Orchestrate schemas."""

from orchestrate.schemas.playbook import (
    BoundStep,
    ParameterSpec,
    Phase,
    PhaseGroup,
    Playbook,
    Step,
)
from orchestrate.schemas.results import (
    PhaseReport,
    PhaseStatus,
    RunReport,
    RunStatus,
    StepResult,
    StepStatus,
)

__all__ = [
    "BoundStep",
    "ParameterSpec",
    "Phase",
    "PhaseGroup",
    "Playbook",
    "Step",
    "PhaseReport",
    "PhaseStatus",
    "RunReport",
    "RunStatus",
    "StepResult",
    "StepStatus",
]
