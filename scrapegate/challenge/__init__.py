"""Challenge module - detection, CAPTCHA solving and recovery."""

from .detector import ChallengeDetector
from .recovery import RecoveryController, RecoveryResult
from .solver import TwoCaptchaSolver

__all__ = ["ChallengeDetector", "RecoveryController", "RecoveryResult", "TwoCaptchaSolver"]
