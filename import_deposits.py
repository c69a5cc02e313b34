#!/usr/bin/env python3
"""
Import validator public keys from a deposit data file into the validator store.

Usage: import-deposits <deposit_file.json> <network> [protocol] [vc_location]

The deposit file is the JSON array written by the staking deposit CLI; only the
pubkey of each entry is used. Keys already tracked for the network are skipped.
Indexes are resolved later by the monitor once the deposits are seen on chain.
"""

import json
import logging
import os
import sys
from typing import List

from dotenv import load_dotenv

from validator_store import JsonValidatorStore

logger = logging.getLogger(__name__)


def read_public_keys(deposit_file: str) -> List[str]:
    with open(deposit_file, 'r') as f:
        deposits = json.load(f)

    if not isinstance(deposits, list):
        raise ValueError(f"{deposit_file} does not contain a list of deposits")

    public_keys = []
    for deposit in deposits:
        public_key = deposit.get('pubkey') if isinstance(deposit, dict) else None
        if not public_key:
            logger.warning("Skipping deposit entry without pubkey")
            continue
        public_keys.append(public_key)
    return public_keys


def import_deposits(deposit_file: str, network: str, store: JsonValidatorStore, protocol: str = None,
                    vc_location: str = None) -> int:
    public_keys = read_public_keys(deposit_file)
    added = store.add_validators(network.lower(), public_keys, protocol=protocol, vc_location=vc_location)
    logger.info(f"Process finished, {added} of {len(public_keys)} keys imported for {network}")
    return added


def main():
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler()]
    )

    if len(sys.argv) < 3:
        print("Usage: import-deposits <deposit_file.json> <network> [protocol] [vc_location]")
        print("Example: import-deposits deposits/deposit_data-xxx.json hoodi lido vc-01")
        sys.exit(2)

    load_dotenv()
    deposit_file, network = sys.argv[1], sys.argv[2]
    protocol = sys.argv[3] if len(sys.argv) > 3 else None
    vc_location = sys.argv[4] if len(sys.argv) > 4 else None

    store = JsonValidatorStore(os.getenv('VALIDATOR_STORE_FILE', 'validators.json'))
    try:
        import_deposits(deposit_file, network, store, protocol, vc_location)
    except (OSError, ValueError) as e:
        logger.error(f"Import failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
