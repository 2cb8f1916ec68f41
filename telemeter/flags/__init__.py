"""Feature flag cache, evaluation and exposure tracking."""

from telemeter.flags.cache import FlagCache, FlagGeneration
from telemeter.flags.manager import FLAG_CALLED_EVENT, FeatureFlagManager, FlagLoadState
from telemeter.flags.models import FeatureFlag, FlagsResponse
from telemeter.flags.tracker import FlagCalledTracker

__all__ = [
    "FLAG_CALLED_EVENT",
    "FeatureFlag",
    "FeatureFlagManager",
    "FlagCache",
    "FlagCalledTracker",
    "FlagGeneration",
    "FlagLoadState",
    "FlagsResponse",
]
