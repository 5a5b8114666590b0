"""
Challenge Detector Module

Classifies a fetch outcome from its status code and headers. Rules are
plain callables evaluated in order; the first one that reports a challenge
wins, so new signals can be plugged in without touching the controller.
"""

from typing import Callable, Iterable, Mapping

from scrapegate.models import ChallengeOutcome


Classifier = Callable[[int, Mapping[str, str]], ChallengeOutcome]

MITIGATION_HEADER = "cf-mitigated"


def managed_challenge(status: int, headers: Mapping[str, str]) -> ChallengeOutcome:
    """403 with ``cf-mitigated: challenge`` (a plain block does not qualify)."""
    if status == 403 and headers.get(MITIGATION_HEADER, "").strip().lower() == "challenge":
        return ChallengeOutcome.MANAGED_CHALLENGE
    return ChallengeOutcome.NONE


def rate_limited(status: int, headers: Mapping[str, str]) -> ChallengeOutcome:
    """HTTP 429."""
    if status == 429:
        return ChallengeOutcome.RATE_LIMITED
    return ChallengeOutcome.NONE


DEFAULT_CLASSIFIERS: tuple[Classifier, ...] = (managed_challenge, rate_limited)


class ChallengeDetector:
    """
    Ordered set of challenge classifiers.

    Example:
        detector = ChallengeDetector()
        detector.register(my_captcha_wall_rule)
        outcome = detector.classify(403, {"cf-mitigated": "challenge"})
    """

    def __init__(self, classifiers: Iterable[Classifier] | None = None):
        self._classifiers = list(classifiers) if classifiers is not None else list(DEFAULT_CLASSIFIERS)

    def register(self, classifier: Classifier, first: bool = False) -> None:
        """Add a classifier at the end (or the front) of the chain."""
        if first:
            self._classifiers.insert(0, classifier)
        else:
            self._classifiers.append(classifier)

    def classify(self, status: int, headers: Mapping[str, str]) -> ChallengeOutcome:
        normalized = {name.lower(): value for name, value in headers.items()}

        for classifier in self._classifiers:
            outcome = classifier(status, normalized)
            if outcome is not ChallengeOutcome.NONE:
                return outcome

        return ChallengeOutcome.NONE
