from __future__ import annotations

from typing import Dict, List, Type

from .ascore import AScoreAggregator
from .base import Integration
from .formularity import FormularityIntegration
from .icr2ls import Icr2lsIntegration


INTEGRATIONS: Dict[str, Type[Integration]] = {
    "formularity": FormularityIntegration,
    "icr2ls": Icr2lsIntegration,
}

AGGREGATORS: Dict[str, Type[AScoreAggregator]] = {
    "ascore": AScoreAggregator,
}


def available() -> List[str]:
    return sorted([*INTEGRATIONS, *AGGREGATORS])


def build_integration(name: str) -> Integration:
    """Instantiate the single-run integration registered as *name*."""
    try:
        return INTEGRATIONS[name.lower()]()
    except KeyError:
        raise KeyError(f"Unknown integration '{name}'. Available: {', '.join(available())}") from None


def is_aggregator(name: str) -> bool:
    return name.lower() in AGGREGATORS
