"""
Validator state store.

Validator rows live in one JSON document partitioned by network:

    {"last_updated": "...", "networks": {"mainnet": [{...record...}, ...]}}

Reads take a shared lock, writes go to a temporary file under an exclusive
lock and atomically replace the store file, so an interrupted run never leaves
a half-written store behind.
"""

import fcntl
import json
import logging
import os
import random
import shutil
import tempfile
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from data_source import normalize_pubkey
from monitor_errors import DataIntegrityError

logger = logging.getLogger(__name__)


@dataclass
class ValidatorRecord:
    public_key: str
    network: str
    validator_index: Optional[int] = None
    balance: int = 0
    status: Optional[str] = None
    slashed: Optional[bool] = None
    last_epoch_checked: int = 0
    protocol: Optional[str] = None
    vc_location: Optional[str] = None
    is_alert_active: bool = True
    dvt_software: Optional[str] = None
    validator_share_ratio: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'ValidatorRecord':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class JsonValidatorStore:
    """Validator table kept in a JSON file."""

    def __init__(self, store_file: str):
        self.store_file = store_file
        self.data = self.load()

    def load(self) -> Dict:
        """Load the store file or create an empty structure"""
        if os.path.exists(self.store_file):
            with open(self.store_file, 'r') as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                data = json.load(f)
            data.setdefault('networks', {})
            return data

        logger.info(f"Store file {self.store_file} not found, starting empty")
        return {
            "last_updated": None,
            "networks": {}
        }

    def save(self) -> None:
        """Save the store using an atomic write"""
        self.data["last_updated"] = datetime.now(timezone.utc).isoformat()

        directory = os.path.dirname(os.path.abspath(self.store_file))
        temp_file = None
        try:
            with tempfile.NamedTemporaryFile(mode='w', dir=directory,
                                             prefix=os.path.basename(self.store_file) + '.tmp',
                                             delete=False) as f:
                temp_file = f.name
                fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                json.dump(self.data, f, indent=2)

            shutil.move(temp_file, self.store_file)
            logger.debug(f"Saved validator store to {self.store_file}")

        except Exception as e:
            logger.error(f"Failed to save validator store: {e}")
            if temp_file and os.path.exists(temp_file):
                os.unlink(temp_file)
            raise

    def _rows(self, network: str) -> List[Dict]:
        return self.data['networks'].setdefault(network, [])

    def _row_by_pubkey(self, network: str, public_key: str) -> Optional[Dict]:
        public_key = normalize_pubkey(public_key)
        for row in self._rows(network):
            if row['public_key'] == public_key:
                return row
        return None

    def load_all(self, network: str) -> List[ValidatorRecord]:
        return [ValidatorRecord.from_dict(row) for row in self._rows(network)]

    def load_resolved(self, network: str) -> List[ValidatorRecord]:
        """All validators of a network with a known validator index."""
        return [ValidatorRecord.from_dict(row) for row in self._rows(network)
                if row.get('validator_index') is not None]

    def load_unresolved_sample(self, network: str, limit: int) -> List[ValidatorRecord]:
        """A random sample of at most limit validators still missing an index."""
        unresolved = [row for row in self._rows(network) if row.get('validator_index') is None]
        if len(unresolved) > limit:
            unresolved = random.sample(unresolved, limit)
        return [ValidatorRecord.from_dict(row) for row in unresolved]

    def set_validator_indexes(self, network: str, indexes: Dict[str, int], watermark: int = None) -> int:
        """Persist resolved indexes keyed by public key, returns how many were stored.

        When watermark is given it becomes the starting last_epoch_checked of
        each resolved row (never lowering an existing one).
        """
        taken = {row['validator_index']: row['public_key'] for row in self._rows(network)
                 if row.get('validator_index') is not None}

        updated = 0
        for public_key, validator_index in indexes.items():
            row = self._row_by_pubkey(network, public_key)
            if row is None:
                raise DataIntegrityError(f"Public key {public_key[:20]}... is not tracked on {network}")

            owner = taken.get(validator_index)
            if owner is not None and owner != row['public_key']:
                raise DataIntegrityError(
                    f"Validator index {validator_index} already assigned to {owner[:20]}... on {network}")

            row['validator_index'] = validator_index
            if watermark is not None:
                row['last_epoch_checked'] = max(row.get('last_epoch_checked') or 0, watermark)
            taken[validator_index] = row['public_key']
            updated += 1

        if updated:
            self.save()
        return updated

    def update_states(self, network: str, records: Iterable[ValidatorRecord]) -> None:
        """Write balance, status and slashed for a batch of validators in one save."""
        rows_by_index = {row['validator_index']: row for row in self._rows(network)
                         if row.get('validator_index') is not None}

        for record in records:
            row = rows_by_index.get(record.validator_index)
            if row is None:
                raise DataIntegrityError(
                    f"Validator {record.validator_index} is not tracked on {network}")
            row['balance'] = record.balance
            row['status'] = record.status
            row['slashed'] = record.slashed

        self.save()

    def advance_watermark(self, network: str, epoch: int, exclude: Iterable[int] = ()) -> int:
        """
        Move last_epoch_checked forward to epoch for every resolved validator.

        Validators listed in exclude keep their watermark. The watermark never
        moves backwards. Returns the number of validators advanced.
        """
        excluded = set(exclude)
        advanced = 0
        for row in self._rows(network):
            index = row.get('validator_index')
            if index is None or index in excluded:
                continue
            if row.get('last_epoch_checked', 0) < epoch:
                row['last_epoch_checked'] = epoch
                advanced += 1

        self.save()
        return advanced

    def add_validators(self, network: str, public_keys: Iterable[str], protocol: Optional[str] = None,
                       vc_location: Optional[str] = None) -> int:
        """Insert public keys that are not tracked yet, returns how many were added."""
        rows = self._rows(network)
        existing = {row['public_key'] for row in rows}

        added = 0
        for public_key in public_keys:
            public_key = normalize_pubkey(public_key)
            if public_key in existing:
                continue
            record = ValidatorRecord(public_key=public_key, network=network,
                                     protocol=protocol, vc_location=vc_location)
            rows.append(asdict(record))
            existing.add(public_key)
            added += 1

        if added:
            self.save()
        return added


class ValidatorSnapshot:
    """
    Saved validator rows for one pass, keyed by index and public key.

    Updated as batches are persisted so later steps of the same pass never work
    on stale values. Discarded when the pass ends.
    """

    def __init__(self, records: Iterable[ValidatorRecord]):
        self.by_index: Dict[int, ValidatorRecord] = {}
        self.by_pubkey: Dict[str, ValidatorRecord] = {}
        for record in records:
            self.update(record)

    def __len__(self) -> int:
        return len(self.by_index)

    def update(self, record: ValidatorRecord) -> None:
        if record.validator_index is not None:
            self.by_index[record.validator_index] = record
        self.by_pubkey[normalize_pubkey(record.public_key)] = record

    def get(self, validator_index: int) -> Optional[ValidatorRecord]:
        return self.by_index.get(validator_index)

    def get_by_pubkey(self, public_key: str) -> Optional[ValidatorRecord]:
        return self.by_pubkey.get(normalize_pubkey(public_key))

    def indexes(self) -> List[int]:
        return sorted(self.by_index)

    def public_keys(self) -> List[str]:
        return sorted(self.by_pubkey)

    def watermarks(self, indexes: Iterable[int] = None) -> Dict[int, int]:
        if indexes is None:
            indexes = self.indexes()
        return {index: self.by_index[index].last_epoch_checked for index in indexes}
