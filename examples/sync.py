#!/usr/bin/env python3
"""Refresh staging and local from production using examples/sync.yaml.

Usage:
    python examples/sync.py
"""

import logging

from anonsync import Replicator, succeeded

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

if __name__ == "__main__":
    with Replicator.from_config("examples/sync.yaml") as rep:
        print(rep)
        results = rep.sync_chain()
    for r in results:
        print(
            f"  {r['source']}->{r['target']} {r['table']}: {r['status']} "
            f"({r.get('rows_upserted', 0)} upserted, {r.get('rows_deleted', 0)} deleted)"
        )
    print("OK" if succeeded(results) else "FAILED")
