#!/usr/bin/env python3
"""
Validator Monitor

Runs one reconciliation pass for a network: fetches the current state of every
tracked validator from the configured data source, compares it with the saved
state, sends alerts for meaningful changes and finally moves each validator's
last_epoch_checked watermark to the latest finalized epoch.

Steps run in a fixed order:
1. latest finalized epoch (fatal on failure)
2. index resolution for validators only known by public key
3. balance, status and slashing
4. sync committee membership / missed participation
5. block proposals
6. attestations
7. consolidation events
8. watermark advance

A failed batch in steps 3, 5, 6 or 7 is reported and its validators keep their
old watermark, so the next pass looks at the same epochs again.

Usage: validator-monitor <network> [--debug]
"""

import logging
import sys
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Set

from alerts import AlertEvent, AlertKind, format_address, format_wei
from attestation_aggregator import AttestationAggregator
from batching import chunk
from beaconchain_source import BeaconchainDataSource
from data_source import (
    OP_ATTESTATIONS, OP_BLOCKS, OP_CONSOLIDATIONS, OP_INDEX_CONVERSION, OP_SYNC_COMMITTEE,
    OP_VALIDATOR_INFO, PROPOSAL_MISSED, PROPOSAL_ORPHANED,
    BlockProposal, DataSource, ExecutionBlock, ValidatorInfo, normalize_pubkey,
)
from discord_notifier import DiscordNotifier
from goteth_source import GotethDataSource
from monitor_config import DATA_SOURCE_GOTETH, MonitorConfig
from monitor_errors import ConfigurationError, DataIntegrityError, FatalError, TransportError, UpstreamError
from status_normalizer import FAR_FUTURE_EPOCH, PENDING, effective_status, is_equivalent, is_spam_transition
from validator_store import JsonValidatorStore, ValidatorRecord, ValidatorSnapshot

logger = logging.getLogger(__name__)

GWEI_PER_ETH = 10 ** 9

# Sync committees are known one full period (256 epochs) before they start
SYNC_COMMITTEE_PERIOD_EPOCHS = 256

FETCH_ERRORS = (TransportError, UpstreamError)


@dataclass
class PassResult:
    network: str
    latest_epoch: Optional[int] = None
    indexes_resolved: int = 0
    validators_checked: int = 0
    alerts_raised: int = 0
    api_errors: int = 0
    failed_validators: Set[int] = field(default_factory=set)
    watermarks_advanced: int = 0


def create_data_source(config: MonitorConfig) -> DataSource:
    """Build the backend selected by DATA_SOURCE."""
    if config.data_source == DATA_SOURCE_GOTETH:
        return GotethDataSource(config)
    return BeaconchainDataSource(config)


class ValidatorMonitor:
    def __init__(self, config: MonitorConfig, data_source: DataSource, store: JsonValidatorStore,
                 notifier: DiscordNotifier, aggregator: AttestationAggregator = None):
        self.config = config
        self.network = config.network
        self.data_source = data_source
        self.store = store
        self.notifier = notifier

        if aggregator is None and config.aggregate_missed_attestations:
            aggregator = AttestationAggregator(config.max_attestation_examples)
        self.aggregator = aggregator

        self.snapshot = ValidatorSnapshot([])
        self.result = PassResult(self.network)

    def run_pass(self) -> PassResult:
        """Run all steps once. Raises FatalError when the latest epoch is unavailable."""
        self.result = PassResult(self.network)
        logger.info(f"Starting pass for {self.network} using {self.data_source.name}")

        try:
            latest_epoch = self.fetch_latest_epoch()
        except FatalError as e:
            logger.error(f"Aborting pass: {e}")
            self.report_api_error(str(e))
            raise
        self.result.latest_epoch = latest_epoch

        self.result.indexes_resolved = self.resolve_indexes(latest_epoch)
        self.reconcile_balance_status_slash()
        self.reconcile_sync_committee(latest_epoch)
        self.reconcile_blocks(latest_epoch)
        self.reconcile_attestations(latest_epoch)
        self.reconcile_consolidations(latest_epoch)
        self.flush_attestations()
        self.result.watermarks_advanced = self.advance_watermark(latest_epoch)

        result = self.result
        logger.info(f"Pass finished for {self.network} at epoch {latest_epoch}: "
                    f"{result.validators_checked} validators, {result.alerts_raised} alerts, "
                    f"{result.api_errors} API errors, {len(result.failed_validators)} validators kept their watermark")
        return self.result

    # Alert helpers

    def alert(self, kind: AlertKind, record: ValidatorRecord = None, old_value=None, new_value=None,
              detail: str = None) -> None:
        event = AlertEvent(kind=kind, old_value=old_value, new_value=new_value, detail=detail)
        if record is not None:
            event.protocol = record.protocol
            event.vc_location = record.vc_location
            event.is_active = record.is_alert_active
            event.validator_index = record.validator_index
        self.send(event)

    def send(self, event: AlertEvent) -> None:
        self.notifier.notify(event)
        self.result.alerts_raised += 1

    def report_api_error(self, message: str) -> None:
        self.result.api_errors += 1
        self.send(AlertEvent(kind=AlertKind.API_ERROR, detail=message))

    def batch_failed(self, indexes: Iterable[int], what: str, error: Exception) -> None:
        indexes = list(indexes)
        logger.error(f"Failed to fetch {what} for {len(indexes)} validators: {error}")
        self.result.failed_validators.update(indexes)
        self.report_api_error(f"Failed to fetch {what}: {error}")

    # Steps

    def fetch_latest_epoch(self) -> int:
        try:
            head_epoch = self.data_source.fetch_epoch('latest')
        except FETCH_ERRORS as e:
            raise FatalError(f"Could not fetch the latest epoch: {e}") from e

        latest_epoch = head_epoch - self.data_source.unfinalized_epoch_lag
        logger.info(f"Latest finalized epoch: {latest_epoch}")
        return latest_epoch

    def resolve_indexes(self, latest_epoch: int) -> int:
        """Look up validator indexes for a sample of validators only known by public key.

        Newly resolved validators start at latest_epoch, their history before
        being tracked is not replayed.
        """
        records = self.store.load_unresolved_sample(self.network, self.config.index_resolution_sample_size)
        if not records:
            return 0

        logger.info(f"Resolving indexes for {len(records)} validators")
        resolved = 0
        for batch in chunk(records, self.data_source.chunk_size(OP_INDEX_CONVERSION)):
            public_keys = [record.public_key for record in batch]
            wanted = set(public_keys)
            try:
                infos = self.data_source.fetch_validator_info(public_keys)
            except FETCH_ERRORS as e:
                logger.error(f"Index resolution failed: {e}")
                self.report_api_error(f"Failed to resolve validator indexes: {e}")
                continue

            found = {normalize_pubkey(info.public_key): info.validator_index for info in infos
                     if normalize_pubkey(info.public_key) in wanted}
            try:
                resolved += self.store.set_validator_indexes(self.network, found, watermark=latest_epoch)
            except DataIntegrityError as e:
                logger.error(f"Index resolution rejected: {e}")
                self.report_api_error(str(e))

        logger.info(f"Resolved {resolved}/{len(records)} validator indexes")
        return resolved

    def reconcile_balance_status_slash(self) -> None:
        self.snapshot = ValidatorSnapshot(self.store.load_resolved(self.network))
        logger.info(f"Checking {len(self.snapshot)} validators")

        for batch in chunk(self.snapshot.indexes(), self.data_source.chunk_size(OP_VALIDATOR_INFO)):
            try:
                infos = self.data_source.fetch_validator_info(batch)
            except FETCH_ERRORS as e:
                self.batch_failed(batch, 'validator info', e)
                continue

            updated = []
            for info in infos:
                saved = self.snapshot.get(info.validator_index)
                if saved is None:
                    error = DataIntegrityError(f"Validator {info.validator_index} returned but not tracked")
                    logger.error(str(error))
                    self.report_api_error(str(error))
                    continue
                updated.append(self.compare_validator(saved, info))

            if not updated:
                continue
            self.store.update_states(self.network, updated)
            for record in updated:
                self.snapshot.update(record)
            self.result.validators_checked += len(updated)

    def compare_validator(self, saved: ValidatorRecord, info: ValidatorInfo) -> ValidatorRecord:
        """Raise alerts for one validator and return its updated record."""
        new_status = effective_status(info.status, info.exit_epoch)
        old_status = saved.status

        # Balance
        was_pending = effective_status(old_status, FAR_FUTURE_EPOCH) == PENDING
        decrease = saved.balance - info.balance
        if saved.balance != 0 and not was_pending and decrease > self.config.balance_decrease_threshold:
            self.alert(AlertKind.BALANCE_DECREASING, saved,
                       old_value=saved.balance / GWEI_PER_ETH, new_value=info.balance / GWEI_PER_ETH)

        # Slashing
        if saved.slashed is not None and saved.slashed != info.slashed:
            detail = None
            if saved.slashed and not info.slashed:
                detail = "Anomaly: slashed flag cleared upstream"
                logger.warning(f"Validator {saved.validator_index} reported as no longer slashed")
            self.alert(AlertKind.SLASH_CHANGE, saved, old_value=saved.slashed, new_value=info.slashed,
                       detail=detail)

        # Status
        if (old_status is not None and new_status != old_status
                and not is_equivalent(info.status, old_status, info.exit_epoch)
                and not is_spam_transition(old_status, new_status)):
            self.alert(AlertKind.STATUS_CHANGE, saved, old_value=old_status, new_value=new_status)

        return replace(saved, balance=info.balance, status=new_status, slashed=info.slashed)

    def reconcile_sync_committee(self, latest_epoch: int) -> None:
        if self.data_source.supports_sync_committee:
            self._check_sync_committee_membership(latest_epoch)
        elif self.data_source.supports_missing_sync_committee:
            self._check_missing_sync_committee(latest_epoch)
        else:
            logger.debug(f"{self.data_source.name} has no sync committee data, skipping")

    def _check_sync_committee_membership(self, latest_epoch: int) -> None:
        for period in ('latest', 'next'):
            try:
                committee = self.data_source.fetch_sync_committee(period)
            except FETCH_ERRORS as e:
                logger.error(f"Failed to fetch {period} sync committee: {e}")
                self.report_api_error(f"Failed to fetch {period} sync committee: {e}")
                continue

            announced_epoch = committee.start_epoch - SYNC_COMMITTEE_PERIOD_EPOCHS
            members = 0
            for validator_index in committee.validators:
                record = self.snapshot.get(validator_index)
                if record is None:
                    continue
                members += 1
                # One alert per window: the pass whose horizon first reaches the announcement
                if record.last_epoch_checked < announced_epoch <= latest_epoch:
                    self.alert(AlertKind.SYNC_COMMITTEE, record,
                               detail=f"Period {committee.period} ({period}): "
                                      f"epochs {committee.start_epoch} - {committee.end_epoch}")
            logger.info(f"{members} tracked validators in the {period} sync committee (period {committee.period})")

    def _check_missing_sync_committee(self, latest_epoch: int) -> None:
        target = self.config.sync_committee_participation_target
        for batch in chunk(self.snapshot.indexes(), self.data_source.chunk_size(OP_SYNC_COMMITTEE)):
            try:
                rows = self.data_source.fetch_missing_sync_committee(self.snapshot.watermarks(batch), target)
            except FETCH_ERRORS as e:
                logger.error(f"Failed to fetch sync committee participation: {e}")
                self.report_api_error(f"Failed to fetch sync committee participation: {e}")
                continue

            for row in rows:
                record = self.snapshot.get(row.validator_index)
                if record is None or not record.last_epoch_checked < row.epoch <= latest_epoch:
                    continue
                if row.participations < target:
                    self.alert(AlertKind.SYNC_COMMITTEE_MISSED, record,
                               detail=f"Epoch {row.epoch}: {row.participations}/{target} participations")

    def reconcile_blocks(self, latest_epoch: int) -> None:
        last_block_epoch = latest_epoch - 1
        for batch in chunk(self.snapshot.indexes(), self.data_source.chunk_size(OP_BLOCKS)):
            watermarks = self.snapshot.watermarks(batch)
            try:
                proposals = self.data_source.fetch_blocks(batch, watermarks, last_block_epoch)
            except FETCH_ERRORS as e:
                self.batch_failed(batch, 'block proposals', e)
                continue

            for proposal in proposals:
                record = self.snapshot.get(proposal.validator_index)
                if record is None or not record.last_epoch_checked < proposal.epoch <= last_block_epoch:
                    continue
                self.classify_proposal(record, proposal)

    def classify_proposal(self, record: ValidatorRecord, proposal: BlockProposal) -> None:
        if proposal.outcome == PROPOSAL_ORPHANED:
            self.alert(AlertKind.BLOCK_ORPHANED, record, detail=self._proposal_detail(proposal))
            return
        if proposal.outcome == PROPOSAL_MISSED:
            self.alert(AlertKind.BLOCK_MISSED, record, detail=self._proposal_detail(proposal))
            return

        block = self._execution_block(proposal)
        transactions = proposal.transactions_count
        if transactions is None and block is not None:
            transactions = block.transactions_count
        reward = block.producer_reward if block is not None else None

        if transactions == 0:
            self.alert(AlertKind.BLOCK_EMPTY, record, detail=self._proposal_detail(proposal, block))
        elif (self.config.notify_successful_proposals
              or (reward is not None and reward > self.config.large_block_threshold_wei)):
            self.alert(AlertKind.BLOCK_PROPOSED, record, detail=self._proposal_detail(proposal, block))

    def _execution_block(self, proposal: BlockProposal) -> Optional[ExecutionBlock]:
        if not proposal.exec_block_number:
            return None
        try:
            return self.data_source.fetch_execution_block(proposal.exec_block_number)
        except FETCH_ERRORS as e:
            logger.warning(f"Could not load execution block {proposal.exec_block_number}: {e}")
            return None

    @staticmethod
    def _proposal_detail(proposal: BlockProposal, block: ExecutionBlock = None) -> str:
        def known(value):
            return 'unknown' if value is None else value

        lines = [f"Slot: {proposal.slot} (epoch {proposal.epoch})"]
        if proposal.outcome == PROPOSAL_MISSED:
            return '\n'.join(lines)

        block = block or ExecutionBlock(block_number=proposal.exec_block_number or 0)
        transactions = proposal.transactions_count
        if transactions is None:
            transactions = block.transactions_count

        lines.extend([
            f"Execution block: {known(proposal.exec_block_number)}",
            f"Reward: {format_wei(block.producer_reward)}",
            f"Fee recipient: {format_address(proposal.fee_recipient or block.fee_recipient)}",
            f"Transactions: {known(transactions)}",
            f"Gas: {known(proposal.gas_used or block.gas_used)} / {known(proposal.gas_limit or block.gas_limit)}",
        ])
        if proposal.graffiti:
            lines.append(f"Graffiti: {proposal.graffiti}")
        return '\n'.join(lines)

    def reconcile_attestations(self, latest_epoch: int) -> None:
        for batch in chunk(self.snapshot.indexes(), self.data_source.chunk_size(OP_ATTESTATIONS)):
            watermarks = self.snapshot.watermarks(batch)
            try:
                outcomes = self.data_source.fetch_attestations(batch, min(watermarks.values()))
            except FETCH_ERRORS as e:
                self.batch_failed(batch, 'attestations', e)
                continue

            for outcome in outcomes:
                if outcome.successful:
                    continue
                record = self.snapshot.get(outcome.validator_index)
                if record is None or not record.last_epoch_checked < outcome.epoch <= latest_epoch:
                    continue

                if self.aggregator is None:
                    self.alert(AlertKind.ATTESTATIONS_MISSED, record, detail=f"Epoch {outcome.epoch}")
                elif record.is_alert_active:
                    self.aggregator.add(record.vc_location, record.validator_index, outcome.epoch,
                                        record.protocol)

    def flush_attestations(self) -> None:
        if self.aggregator is None:
            return
        for event in self.aggregator.flush():
            self.send(event)

    def reconcile_consolidations(self, latest_epoch: int) -> None:
        if not self.data_source.supports_consolidations:
            return

        from_epoch = max(0, latest_epoch - self.config.consolidation_lookback_epochs)
        for batch in chunk(self.snapshot.public_keys(), self.data_source.chunk_size(OP_CONSOLIDATIONS)):
            try:
                events = self.data_source.fetch_consolidation_events(batch, from_epoch)
            except FETCH_ERRORS as e:
                indexes = [self.snapshot.get_by_pubkey(key).validator_index for key in batch]
                self.batch_failed(indexes, 'consolidation events', e)
                continue

            in_batch = set(batch)
            for event in events:
                for public_key in (event.source_pubkey, event.target_pubkey):
                    if public_key not in in_batch:
                        continue
                    record = self.snapshot.get_by_pubkey(public_key)
                    if not record.last_epoch_checked < event.epoch <= latest_epoch:
                        continue
                    role = 'source' if public_key == event.source_pubkey else 'target'
                    self.alert(AlertKind.CONSOLIDATION_EVENT, record, detail='\n'.join([
                        f"Validator is the consolidation {role}",
                        f"Source: {event.source_pubkey}",
                        f"Target: {event.target_pubkey}",
                        f"Source address: {format_address(event.source_address)}",
                        f"Slot: {event.slot} (epoch {event.epoch})",
                        f"Result: {event.result if event.result is not None else 'unknown'}",
                    ]))

    def advance_watermark(self, latest_epoch: int) -> int:
        failed = self.result.failed_validators
        advanced = self.store.advance_watermark(self.network, latest_epoch, exclude=failed)
        logger.info(f"Advanced watermark to epoch {latest_epoch} for {advanced} validators ({len(failed)} excluded)")
        return advanced


def setup_logging(level: str = 'INFO', log_file: str = 'validator_monitor.log') -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )


def parse_args(argv: List[str]) -> List[str]:
    return [arg for arg in argv if not arg.startswith('--')]


def main():
    """Main execution function."""
    args = parse_args(sys.argv[1:])
    debug_mode = '--debug' in sys.argv

    if not args:
        print("Usage: validator-monitor <network> [--debug]")
        sys.exit(2)

    try:
        config = MonitorConfig.from_env(args[0])
    except ConfigurationError as e:
        setup_logging()
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    setup_logging('DEBUG' if debug_mode else config.log_level, config.log_file)

    monitor = ValidatorMonitor(
        config,
        create_data_source(config),
        JsonValidatorStore(config.store_file),
        DiscordNotifier(config),
    )

    try:
        monitor.run_pass()
    except FatalError:
        sys.exit(1)


if __name__ == "__main__":
    main()
