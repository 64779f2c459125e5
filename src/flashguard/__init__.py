"""
flashguard - reliable detached firmware flashing for serial-bootloader boards.
"""

__version__ = "0.1.0"

from flashguard.session import ExitOutcome, FlashOrchestrator, FlashOutcome, FlashRequest

__all__ = ["ExitOutcome", "FlashOrchestrator", "FlashOutcome", "FlashRequest", "__version__"]
