"""
beaconcha.in v1 API data source.

Validators can be addressed by index or public key, comma separated, up to the
URL-length limit of the API. Responses are {"status": "OK", "data": ...}
envelopes where data is an object for a single validator and a list otherwise.
"""

import logging
import time
from typing import Any, Dict, List, Sequence, Union

import requests

from data_source import (
    OP_ATTESTATIONS, OP_BLOCKS, OP_CONSOLIDATIONS, OP_INDEX_CONVERSION, OP_SYNC_COMMITTEE,
    OP_VALIDATOR_INFO, PROPOSAL_MISSED, PROPOSAL_ORPHANED, PROPOSAL_PROPOSED,
    AttestationOutcome, BlockProposal, DataSource, ExecutionBlock, SyncCommittee, ValidatorInfo,
    ROW_ERRORS, as_int, normalize_pubkey, unwrap_envelope,
)
from monitor_config import MonitorConfig
from monitor_errors import TransportError, UpstreamError

logger = logging.getLogger(__name__)

# beaconcha.in proposal status codes
PROPOSAL_STATUSES = {
    '0': PROPOSAL_MISSED,  # scheduled but never seen, only past epochs are queried
    '1': PROPOSAL_PROPOSED,
    '2': PROPOSAL_MISSED,
    '3': PROPOSAL_ORPHANED,
}


class BeaconchainDataSource(DataSource):
    """Live REST backend."""

    name = 'beaconchain'

    supports_sync_committee = True

    # /epoch/latest is the head epoch, two epochs ahead of finality
    unfinalized_epoch_lag = 2

    def __init__(self, config: MonitorConfig, session: requests.Session = None):
        chunk_sizes = {
            OP_INDEX_CONVERSION: config.beaconchain_index_chunk_size,
            OP_VALIDATOR_INFO: config.beaconchain_chunk_size,
            OP_ATTESTATIONS: config.beaconchain_chunk_size,
            OP_BLOCKS: config.beaconchain_chunk_size,
            OP_SYNC_COMMITTEE: config.beaconchain_chunk_size,
            OP_CONSOLIDATIONS: config.beaconchain_chunk_size,
        }
        super().__init__(config.network, chunk_sizes)

        self.base_url = f"{config.beaconchain_endpoint}/api/v1"
        self.timeout = config.request_timeout

        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': 'Validator-Monitor/1.0',
            'Accept': 'application/json',
        })
        if config.beaconchain_api_key:
            self.session.headers['apikey'] = config.beaconchain_api_key

        self.last_call = 0.0
        self.rate_limit = 0.1

    def _rate_limit_wait(self) -> None:
        time_since_last = time.time() - self.last_call
        if time_since_last < self.rate_limit:
            time.sleep(self.rate_limit - time_since_last)
        self.last_call = time.time()

    def _get(self, path: str, params: Dict[str, Any] = None) -> List[Any]:
        """GET an API path and return the unwrapped envelope data."""
        url = f"{self.base_url}{path}"
        self._rate_limit_wait()

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Request to {path} failed: {e}")

        try:
            envelope = response.json()
        except ValueError as e:
            if response.status_code != 200:
                raise UpstreamError(f"HTTP {response.status_code} from {path}: {response.text[:200]}",
                                    response.text[:500])
            raise TransportError(f"Invalid JSON from {path}: {e}")

        if response.status_code != 200:
            raise UpstreamError(f"HTTP {response.status_code} from {path}", envelope)

        return unwrap_envelope(envelope)

    @staticmethod
    def _id_list(ids: Sequence[Union[int, str]]) -> str:
        return ','.join(str(i) for i in ids)

    def fetch_validator_info(self, ids: Sequence[Union[int, str]]) -> List[ValidatorInfo]:
        if not ids:
            return []

        rows = self._get(f"/validator/{self._id_list(ids)}")
        results = []
        try:
            for row in rows:
                results.append(ValidatorInfo(
                    validator_index=int(row['validatorindex']),
                    public_key=normalize_pubkey(row['pubkey']),
                    balance=int(row.get('balance') or 0),
                    status=row.get('status', 'unknown'),
                    slashed=bool(row.get('slashed', False)),
                    exit_epoch=as_int(row.get('exitepoch')),
                ))
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed validator row: {e!r}")

        logger.debug(f"Fetched validator info for {len(results)}/{len(ids)} validators")
        return results

    def fetch_attestations(self, ids: Sequence[int], since_epoch: int) -> List[AttestationOutcome]:
        if not ids:
            return []

        rows = self._get(f"/validator/{self._id_list(ids)}/attestations")
        results = []
        try:
            for row in rows:
                epoch = int(row['epoch'])
                if epoch <= since_epoch:
                    continue
                results.append(AttestationOutcome(
                    validator_index=int(row['validatorindex']),
                    epoch=epoch,
                    successful=int(row.get('status', 0)) == 1,
                    inclusion_slot=as_int(row.get('inclusionslot')),
                ))
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed attestation row: {e!r}")
        return results

    def fetch_blocks(self, ids: Sequence[int], watermarks: Dict[int, int], epoch: int) -> List[BlockProposal]:
        if not ids:
            return []

        rows = self._get(f"/validator/{self._id_list(ids)}/proposals", params={'epoch': epoch})
        results = []
        try:
            for row in rows:
                outcome = PROPOSAL_STATUSES.get(str(row.get('status')))
                if outcome is None:
                    logger.warning(f"Unknown proposal status {row.get('status')!r} for slot {row.get('slot')}")
                    continue

                results.append(BlockProposal(
                    validator_index=int(row['proposer']),
                    epoch=int(row['epoch']),
                    slot=int(row['slot']),
                    outcome=outcome,
                    exec_block_number=as_int(row.get('exec_block_number')),
                    fee_recipient=row.get('exec_fee_recipient'),
                    transactions_count=as_int(row.get('exec_transactions_count')),
                    gas_used=as_int(row.get('exec_gas_used')),
                    gas_limit=as_int(row.get('exec_gas_limit')),
                    graffiti=row.get('graffiti_text'),
                ))
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed proposal row: {e!r}")
        return results

    def fetch_sync_committee(self, period: str) -> SyncCommittee:
        rows = self._get(f"/sync_committee/{period}")
        if not rows:
            raise UpstreamError(f"Empty sync committee response for {period}", rows)

        data = rows[0]
        try:
            return SyncCommittee(
                period=int(data['period']),
                start_epoch=int(data['start_epoch']),
                end_epoch=int(data['end_epoch']),
                validators=[int(v) for v in data.get('validators', [])],
            )
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed {period} sync committee: {e!r}")

    def fetch_epoch(self, epoch: Union[int, str] = 'latest') -> int:
        rows = self._get(f"/epoch/{epoch}")
        if not rows or not isinstance(rows[0], dict) or rows[0].get('epoch') is None:
            raise UpstreamError(f"No epoch in response for {epoch}", rows)
        try:
            return int(rows[0]['epoch'])
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed epoch {epoch}: {e!r}")

    def fetch_execution_block(self, block_number: int) -> ExecutionBlock:
        rows = self._get(f"/execution/block/{block_number}")
        if not rows or rows[0] is None:
            raise UpstreamError(f"No execution block data for {block_number}", rows)

        block_data = rows[0]
        try:
            return ExecutionBlock(
                block_number=int(block_data.get('blockNumber', block_number)),
                producer_reward=as_int(block_data.get('producerReward')),
                fee_recipient=block_data.get('feeRecipient'),
                gas_used=as_int(block_data.get('gasUsed')),
                gas_limit=as_int(block_data.get('gasLimit')),
                transactions_count=as_int(block_data.get('txCount')),
            )
        except ROW_ERRORS as e:
            raise TransportError(f"Malformed execution block {block_number}: {e!r}")
