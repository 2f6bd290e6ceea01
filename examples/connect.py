#!/usr/bin/env python3
"""Example: verify connectivity to every database of the chain.

Usage:
    # Set DB_* / DB_*_STAGING / DB_*_LOCAL in .env or the environment, then:
    python examples/connect.py
"""

import sys

from anonsync.connection import DatabaseConnection, load_dotenv

load_dotenv()

failed = False
for environment in ("production", "staging", "local"):
    dc = DatabaseConnection(environment)
    try:
        conn = dc.connect()
        cur = conn.cursor()
        cur.execute("SELECT 1")
        cur.fetchone()
        print(f"{environment:<10} OK      {dc.dialect} {dc.server}/{dc.database} as {dc.user}")
    except Exception as exc:
        failed = True
        print(f"{environment:<10} FAILED  {dc.dialect} {dc.server}/{dc.database}")
        print(f"  Error type : {type(exc).__name__}")
        print(f"  Detail     : {exc}")
    finally:
        dc.close()

sys.exit(1 if failed else 0)
