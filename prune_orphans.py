"""
Maintenance script that removes scores left behind by deleted performances
or judges. Aggregation already ignores them; this only tidies the store.
"""

from app import ensure_store_ready, sync_client

def prune():
    ensure_store_ready()
    removed = sync_client.prune_orphaned_scores()
    if removed:
        print(f"Removed {len(removed)} orphaned score(s):")
        for key in removed:
            print(f"  - {key}")
    else:
        print("No orphaned scores found.")
    return removed

if __name__ == '__main__':
    prune()
