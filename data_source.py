"""
Data source capability set.

Both backends (beaconcha.in REST and goteth ClickHouse) implement DataSource
and return the same result types, so the reconciliation engine never needs to
know which one it is talking to. Optional capabilities are advertised through
the supports_* class attributes.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Union

from monitor_errors import UpstreamError

logger = logging.getLogger(__name__)

# Operations with their own batch size limits
OP_INDEX_CONVERSION = 'index_conversion'
OP_VALIDATOR_INFO = 'validator_info'
OP_ATTESTATIONS = 'attestations'
OP_BLOCKS = 'blocks'
OP_SYNC_COMMITTEE = 'sync_committee'
OP_CONSOLIDATIONS = 'consolidations'

# Proposal outcomes
PROPOSAL_PROPOSED = 'proposed'
PROPOSAL_MISSED = 'missed'
PROPOSAL_ORPHANED = 'orphaned'

# Raised while converting an upstream row with missing or malformed fields
ROW_ERRORS = (KeyError, TypeError, ValueError, AttributeError)


@dataclass
class ValidatorInfo:
    validator_index: int
    public_key: str
    balance: int
    status: str
    slashed: bool
    exit_epoch: Optional[int] = None


@dataclass
class AttestationOutcome:
    validator_index: int
    epoch: int
    successful: bool
    inclusion_slot: Optional[int] = None


@dataclass
class BlockProposal:
    validator_index: int
    epoch: int
    slot: int
    outcome: str
    exec_block_number: Optional[int] = None
    fee_recipient: Optional[str] = None
    transactions_count: Optional[int] = None
    gas_used: Optional[int] = None
    gas_limit: Optional[int] = None
    graffiti: Optional[str] = None


@dataclass
class SyncCommittee:
    period: int
    start_epoch: int
    end_epoch: int
    validators: List[int]


@dataclass
class ExecutionBlock:
    block_number: int
    producer_reward: Optional[int] = None
    fee_recipient: Optional[str] = None
    gas_used: Optional[int] = None
    gas_limit: Optional[int] = None
    transactions_count: Optional[int] = None


@dataclass
class SyncParticipation:
    validator_index: int
    epoch: int
    participations: int


@dataclass
class ConsolidationEvent:
    slot: int
    epoch: int
    source_address: Optional[str]
    source_pubkey: str
    target_pubkey: str
    result: Optional[str] = None


def normalize_pubkey(public_key: str) -> str:
    """Lowercase hex public key with a 0x prefix."""
    key = public_key.strip().lower()
    if not key.startswith('0x'):
        key = '0x' + key
    return key


def unwrap_envelope(envelope: Any) -> List[Any]:
    """
    Return the data of an {"status": "OK", "data": ...} envelope as a list.

    A single-object data field is wrapped in a one-element list. Anything other
    than an OK envelope raises UpstreamError carrying the raw envelope.
    """
    if not isinstance(envelope, dict):
        raise UpstreamError(f"Malformed response envelope: {envelope!r}", envelope)

    status = envelope.get('status')
    if status != 'OK':
        raise UpstreamError(f"Upstream returned status {status!r}", envelope)

    data = envelope.get('data')
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


def as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == '' or value == '\\N':
        return default
    return int(value)


class DataSource:
    """Read-only access to validator state for one network."""

    name = 'base'

    supports_sync_committee = False
    supports_missing_sync_committee = False
    supports_consolidations = False

    # Epochs between the reported head and finality
    unfinalized_epoch_lag = 0

    def __init__(self, network: str, chunk_sizes: Dict[str, int]):
        self.network = network
        self.chunk_sizes = chunk_sizes

    def chunk_size(self, operation: str) -> int:
        return self.chunk_sizes[operation]

    def fetch_validator_info(self, ids: Sequence[Union[int, str]]) -> List[ValidatorInfo]:
        raise NotImplementedError

    def fetch_attestations(self, ids: Sequence[int], since_epoch: int) -> List[AttestationOutcome]:
        raise NotImplementedError

    def fetch_blocks(self, ids: Sequence[int], watermarks: Dict[int, int], epoch: int) -> List[BlockProposal]:
        raise NotImplementedError

    def fetch_sync_committee(self, period: str) -> SyncCommittee:
        raise NotImplementedError(f"{self.name} does not provide sync committee membership")

    def fetch_epoch(self, epoch: Union[int, str] = 'latest') -> int:
        raise NotImplementedError

    def fetch_execution_block(self, block_number: int) -> ExecutionBlock:
        raise NotImplementedError

    def fetch_missing_sync_committee(self, watermarks: Dict[int, int], target: int) -> List[SyncParticipation]:
        raise NotImplementedError(f"{self.name} does not provide sync committee participation")

    def fetch_consolidation_events(self, pubkeys: Sequence[str], from_epoch: int) -> List[ConsolidationEvent]:
        raise NotImplementedError(f"{self.name} does not provide consolidation events")
