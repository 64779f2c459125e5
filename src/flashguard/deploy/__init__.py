"""
Device-side operations: programmer strategies, port recovery and serial capture.
"""

from .monitor import SerialCapture
from .port_recovery import PortRecoveryManager, RecoveryFailure
from .programmer import (
    DEFAULT_STRATEGIES,
    DEFAULT_STRATEGY_ORDER,
    ProgrammerAdapter,
    ProgrammerAttempt,
    StrategyConfig,
    resolve_strategy_order,
)

__all__ = [
    "DEFAULT_STRATEGIES",
    "DEFAULT_STRATEGY_ORDER",
    "PortRecoveryManager",
    "ProgrammerAdapter",
    "ProgrammerAttempt",
    "RecoveryFailure",
    "SerialCapture",
    "StrategyConfig",
    "resolve_strategy_order",
]
