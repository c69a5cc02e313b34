"""
Missed attestation buffering.

Missed attestations are collected per vc_location during a pass and flushed
as one ATTESTATIONS_MISSED_DELAYED alert per location at the end, instead of
one message per validator per epoch.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, List, Optional

from alerts import AlertEvent, AlertKind

logger = logging.getLogger(__name__)

UNKNOWN_LOCATION = 'unknown'


@dataclass
class MissedAttestation:
    validator_index: int
    epoch: int
    protocol: Optional[str] = None


class AttestationAggregator:
    """Buffers missed attestations keyed by vc_location."""

    def __init__(self, max_examples: int = 10):
        self.max_examples = max_examples
        self.buffer: Dict[str, List[MissedAttestation]] = OrderedDict()

    def __len__(self) -> int:
        return sum(len(misses) for misses in self.buffer.values())

    def add(self, vc_location: Optional[str], validator_index: int, epoch: int,
            protocol: Optional[str] = None) -> None:
        key = vc_location or UNKNOWN_LOCATION
        self.buffer.setdefault(key, []).append(MissedAttestation(validator_index, epoch, protocol))

    def summarize(self, vc_location: str, misses: List[MissedAttestation]) -> AlertEvent:
        protocols = []
        for miss in misses:
            if miss.protocol and miss.protocol not in protocols:
                protocols.append(miss.protocol)

        lines = [
            f"Total attestations: {len(misses)}",
            f"Protocols: {', '.join(protocols) if protocols else 'unknown'}",
        ]
        for miss in misses[:self.max_examples]:
            lines.append(f"{miss.validator_index} / {miss.epoch}")
        if len(misses) > self.max_examples:
            lines.append(f"... and {len(misses) - self.max_examples} more")

        return AlertEvent(
            kind=AlertKind.ATTESTATIONS_MISSED_DELAYED,
            protocol=', '.join(protocols) or None,
            vc_location=vc_location,
            detail='\n'.join(lines),
        )

    def flush(self) -> List[AlertEvent]:
        """Return one summary alert per location and empty the buffer."""
        events = [self.summarize(location, misses) for location, misses in self.buffer.items() if misses]
        if events:
            logger.info(f"Flushing {len(self)} missed attestations across {len(events)} locations")
        self.buffer.clear()
        return events
