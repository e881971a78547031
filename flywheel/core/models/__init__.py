"""
Domain models — Pydantic types for the installer.

All models are re-exported here for convenient access:

    from flywheel.core.models import Manifest, Module, ModuleResult, TrustStore
"""

from flywheel.core.models.contract import ExecutionContract, InstallMode
from flywheel.core.models.manifest import Manifest, Phase
from flywheel.core.models.module import (
    CommandStep,
    DescriptionStep,
    Module,
    RunAs,
    VerifiedInstaller,
    procedure_name,
)
from flywheel.core.models.result import (
    ErrorContext,
    ErrorKind,
    ModuleAction,
    ModuleResult,
    ModuleStatus,
    StepOutcome,
)
from flywheel.core.models.session import SessionExport
from flywheel.core.models.state import InstallState, ModuleState, RunRecord
from flywheel.core.models.trust import TrustEntry, TrustStore

__all__ = [
    # contract.py
    "ExecutionContract",
    "InstallMode",
    # manifest.py
    "Manifest",
    "Phase",
    # module.py
    "CommandStep",
    "DescriptionStep",
    "Module",
    "RunAs",
    "VerifiedInstaller",
    "procedure_name",
    # result.py
    "ErrorContext",
    "ErrorKind",
    "ModuleAction",
    "ModuleResult",
    "ModuleStatus",
    "StepOutcome",
    # session.py
    "SessionExport",
    # state.py
    "InstallState",
    "ModuleState",
    "RunRecord",
    # trust.py
    "TrustEntry",
    "TrustStore",
]
