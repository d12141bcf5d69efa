"""
Operator script that marks overdue subscriptions as expired.
Status reads already correct themselves lazily; this catches accounts nobody has looked at.

Usage: python fix_expired_subscriptions.py [--dry-run]
"""
import argparse

from paygate.database import SessionLocal
from paygate.subscriptions import expire_overdue_subscriptions


def fix_expired_subscriptions(dry_run: bool = False) -> int:
    db = SessionLocal()
    try:
        if dry_run:
            print("⚠️  DRY RUN MODE - No changes will be made\n")

        result = expire_overdue_subscriptions(db, dry_run=dry_run)
        if not result.candidates:
            print("✅ No overdue subscriptions found.")
            return 0

        print(f"Found {len(result.candidates)} overdue subscription(s):")
        for row in result.candidates:
            print(
                f"  - user {row['id']} ({row['email']}) status={row['status']} "
                f"end_date={row['end_date'].isoformat()}"
            )

        if dry_run:
            print("\n💡 This is a dry run. Run without --dry-run to apply changes.")
        else:
            print(f"\n✅ Updated {result.updated} subscription(s) to expired.")
        return result.updated
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Mark subscriptions past their end date as expired.")
    parser.add_argument("--dry-run", action="store_true", help="List overdue subscriptions without updating them")
    args = parser.parse_args()
    fix_expired_subscriptions(dry_run=args.dry_run)
