"""
Clear cached role / permission lookups.

    python -m scripts.clear_role_permission_cache --user-id 42   # one user
    python -m scripts.clear_role_permission_cache --all          # every user (bumps the version)
    python -m scripts.clear_role_permission_cache                # global role and permission lists
"""
import argparse
import asyncio

from cms.cache import cache
from cms.permissions import bump_cache_version, clear_user_cache, forget_global_caches


async def clear(user_id: int | None = None, everyone: bool = False):
    await cache.connect()
    try:
        if user_id is not None:
            await clear_user_cache(user_id)
            print(f"Cleared role/permission cache for user {user_id}")
        elif everyone:
            version = await bump_cache_version()
            print(f"Cache version bumped to {version}")
        else:
            await forget_global_caches()
            print("Cleared global role and permission lists")
    finally:
        await cache.disconnect()


def main():
    parser = argparse.ArgumentParser(description="Clear role/permission caches")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--user-id", type=int, help="Clear a single user's cache")
    group.add_argument("--all", action="store_true", help="Invalidate every user's cache")
    args = parser.parse_args()
    asyncio.run(clear(user_id=args.user_id, everyone=args.all))


if __name__ == "__main__":
    main()
