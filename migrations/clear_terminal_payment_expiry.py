"""
Clear expires_at on finished payment records

Older payment_records rows kept expires_at after reaching success/failed/cancelled/expired,
which made them look like open sessions to cleanup jobs. Only pending rows may carry
an expiry; terminal rows are kept as the permanent audit trail.

Run with: python migrations/clear_terminal_payment_expiry.py
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import text

from clinicpay.database import engine as default_engine


def upgrade(engine=None):
    """Null out expires_at on every non-pending payment record; returns rows fixed"""
    engine = engine or default_engine
    with engine.connect() as conn:
        result = conn.execute(text("""
            UPDATE payment_records
            SET expires_at = NULL
            WHERE status <> 'pending'
            AND expires_at IS NOT NULL
        """))
        fixed = result.rowcount
        conn.commit()
        print(f"✅ Cleared expires_at on {fixed} finished payment records")

        stats = conn.execute(text("""
            SELECT status, COUNT(*), COUNT(expires_at)
            FROM payment_records
            GROUP BY status
        """))
        print("📈 Current payment record statistics:")
        for status, count, with_expiry in stats:
            print(f"   {status}: {count} records ({with_expiry} with expiry)")

        return fixed


def downgrade(engine=None):
    """Nothing to restore: the cleared expiry values carried no information"""
    print("ℹ️  clear_terminal_payment_expiry has no downgrade step")


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="Clear expires_at on finished payment records")
    parser.add_argument("--down", action="store_true", help="Rollback the migration")
    args = parser.parse_args()

    if args.down:
        print("Rolling back migration...")
        downgrade()
    else:
        print("Running migration...")
        upgrade()
