"""
Alert kinds, severities and message rendering.

An AlertEvent is built by the monitor for every detected change and rendered
into a Discord embed here. Rendering is pure: sending (or skipping inactive
validators) is the notifier's job.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from web3 import Web3


class AlertKind(Enum):
    BALANCE_DECREASING = 'BALANCE-DECREASING'
    SLASH_CHANGE = 'SLASH-CHANGE'
    STATUS_CHANGE = 'STATUS-CHANGE'
    BLOCK_MISSED = 'BLOCK-MISSED'
    BLOCK_EMPTY = 'BLOCK-EMPTY'
    BLOCK_ORPHANED = 'BLOCK-ORPHANED'
    BLOCK_PROPOSED = 'BLOCK-PROPOSED'
    ATTESTATIONS_MISSED = 'ATTESTATIONS-MISSED'
    ATTESTATIONS_MISSED_DELAYED = 'ATTESTATIONS-MISSED-DELAYED'
    SYNC_COMMITTEE = 'SYNC-COMMITTEE'
    SYNC_COMMITTEE_MISSED = 'SYNC-COMMITTEE-MISSED'
    CONSOLIDATION_EVENT = 'CONSOLIDATION-EVENT'
    API_ERROR = 'API-ERROR'


class Severity(Enum):
    CRITICAL = 0xE74C3C
    WARNING = 0xE67E22
    CAUTION = 0xF1C40F
    POSITIVE = 0x2ECC71
    NEUTRAL = 0x95A5A6

    @property
    def color(self) -> int:
        return self.value


WARNING_KINDS = (
    AlertKind.BALANCE_DECREASING,
    AlertKind.BLOCK_MISSED,
    AlertKind.BLOCK_EMPTY,
    AlertKind.BLOCK_ORPHANED,
    AlertKind.ATTESTATIONS_MISSED,
    AlertKind.ATTESTATIONS_MISSED_DELAYED,
    AlertKind.SYNC_COMMITTEE_MISSED,
)

POSITIVE_KINDS = (
    AlertKind.BLOCK_PROPOSED,
    AlertKind.SYNC_COMMITTEE,
)


@dataclass
class AlertEvent:
    kind: AlertKind
    protocol: Optional[str] = None
    vc_location: Optional[str] = None
    is_active: bool = True
    validator_index: Optional[int] = None
    old_value: Any = None
    new_value: Any = None
    detail: Optional[str] = None

    @property
    def severity(self) -> Severity:
        return classify_severity(self.kind, self.new_value)


def classify_severity(kind: AlertKind, new_value: Any = None) -> Severity:
    if kind in (AlertKind.SLASH_CHANGE, AlertKind.API_ERROR):
        return Severity.CRITICAL
    if kind in WARNING_KINDS:
        return Severity.WARNING
    if kind in POSITIVE_KINDS:
        return Severity.POSITIVE
    if kind == AlertKind.STATUS_CHANGE:
        status = str(new_value or '')
        if 'slash' in status:
            return Severity.CRITICAL
        if status.endswith('offline'):
            return Severity.CAUTION
        if status.endswith('online'):
            return Severity.POSITIVE
    return Severity.NEUTRAL


def format_wei(amount_wei: Optional[int]) -> str:
    if amount_wei is None:
        return 'unknown'
    ether = Web3.from_wei(int(amount_wei), 'ether')
    return f"{Decimal(ether).normalize():f} ETH"


def format_address(address: Optional[str]) -> str:
    if not address:
        return 'unknown'
    try:
        return Web3.to_checksum_address(address)
    except ValueError:
        return address


def validator_link(explorer_url: Optional[str], validator_index: Optional[int]) -> Optional[str]:
    if explorer_url is None or validator_index is None:
        return None
    return f"{explorer_url}/validator/{validator_index}"


def render_message(event: AlertEvent, network: str, explorer_url: Optional[str] = None) -> Dict[str, Any]:
    """Render an alert as a Discord embed."""
    lines = [f"Network: {network}"]
    if event.protocol:
        lines.append(f"Protocol: {event.protocol}")
    if event.vc_location:
        lines.append(f"Location: {event.vc_location}")

    if event.old_value is not None or event.new_value is not None:
        lines.append(f"{event.old_value} 🡺 {event.new_value}")
    if event.detail:
        lines.append(event.detail)

    link = validator_link(explorer_url, event.validator_index)
    if link:
        lines.append(f"[Validator {event.validator_index}](<{link}>)")

    embed = {
        'title': event.kind.value,
        'description': '\n'.join(lines),
        'color': event.severity.color,
    }
    if link:
        embed['url'] = link
    return embed


def render_text(event: AlertEvent, network: str, explorer_url: Optional[str] = None) -> str:
    """Single-line form of an alert for the log."""
    embed = render_message(event, network, explorer_url)
    return f"{embed['title']} | " + ' | '.join(embed['description'].splitlines())
