#!/usr/bin/env python3
"""Quick migration runner."""
import os
import sys

import psycopg

from portfolio_agent.core.config import get_settings

if len(sys.argv) < 2:
    print("Usage: python3 run_migration.py migrations/0001_analytics_marts.sql")
    sys.exit(1)

migration_file = sys.argv[1]
with open(migration_file, "r") as f:
    sql = f.read()

print(f"📄 Migration file: {migration_file}")
print(f"📊 Content length: {len(sql)} bytes\n")

database_url = os.getenv("DATABASE_URL") or get_settings().DATABASE_URL
if not database_url:
    print("❌ DATABASE_URL environment variable not set")
    print("\nOr copy this SQL and run it manually in your database:\n")
    print("=" * 60)
    print(sql)
    print("=" * 60)
    sys.exit(1)

try:
    print("🔌 Connecting to database...")
    with psycopg.connect(database_url) as conn:
        print("✅ Connected!\n")
        print("🚀 Executing migration...\n")
        conn.execute(sql)
        conn.commit()
    print("✅ Migration complete!")
except psycopg.Error as e:
    print(f"❌ Error running migration: {e}")
    sys.exit(1)
