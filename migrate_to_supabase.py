"""Migration script: local cache → Supabase"""
import sys

from asset_ops.change_feed import RemoteSyncError, split_record
from asset_ops.config import SUPABASE_KEY, SUPABASE_URL
from asset_ops.db_supabase import SupabaseBackend
from asset_ops.local_cache import COLUMNS_KEY, INVENTORY_KEY, USERS_KEY, LocalCache
from asset_ops.state import COLUMNS_CONFIG, USERS_CONFIG


def migrate(url: str, key: str) -> int:
    """Push cached records, columns and users to the backend. Returns the error count."""
    print("🚀 Starting migration: local cache → Supabase")

    cache = LocalCache()
    records = cache.get_json(INVENTORY_KEY) or []
    print(f"📊 Found {len(records)} records in {cache.path}")

    print("🔌 Connecting to Supabase...")
    try:
        backend = SupabaseBackend(url, key)
    except RemoteSyncError as e:
        print(f"❌ {e}")
        return 1

    print("📤 Migrating records...")
    migrated = 0
    errors = 0
    for record in records:
        if not isinstance(record, dict) or not record.get("id"):
            continue
        identity, data = split_record(record)
        try:
            backend.upsert_record(identity, data)
            migrated += 1
            if migrated % 10 == 0:
                print(f"  ✓ Migrated {migrated}/{len(records)} records...")
        except RemoteSyncError as e:
            errors += 1
            print(f"  ⚠️  Error migrating {identity}: {e}")

    for cache_key, config_key in ((COLUMNS_KEY, COLUMNS_CONFIG), (USERS_KEY, USERS_CONFIG)):
        value = cache.get_json(cache_key)
        if value is None:
            continue
        try:
            backend.upsert_config(config_key, value)
            print(f"  ✓ Saved config '{config_key}'")
        except RemoteSyncError as e:
            errors += 1
            print(f"  ⚠️  Error saving config '{config_key}': {e}")

    print("\n" + "=" * 60)
    print("✅ Migration Complete!")
    print(f"📊 Records migrated: {migrated}/{len(records)}")
    print(f"❌ Errors: {errors}")
    print("=" * 60)
    if errors:
        print(f"\n⚠️  Migration completed with {errors} error(s).")
        print("Review the errors above and re-run if needed.")
    return errors


if __name__ == "__main__":
    if not (SUPABASE_URL and SUPABASE_KEY):
        print("❌ Set SUPABASE_URL and SUPABASE_KEY in .env or env vars")
        sys.exit(2)
    sys.exit(1 if migrate(SUPABASE_URL, SUPABASE_KEY) else 0)
