# provision_school.py
#
#   python provision_school.py NPS            -> create/refresh school_nps
#   python provision_school.py NPS --stats    -> also print table/row counts
#
# Uses DATABASE_URL from the environment (or .env).
import argparse
import asyncio
import json

from school_tenancy.config import get_settings
from school_tenancy.logger import configure_from_settings
from school_tenancy.manager import TenantDatabaseManager


async def main(codes, stats):
    settings = get_settings()
    configure_from_settings(settings)

    async with TenantDatabaseManager.from_settings(settings) as manager:
        for code in codes:
            result = await manager.provision_tenant(code)
            print(f"{code}: {result.database_name} ready "
                  f"({result.collections_created} collections, {result.indexes_ensured} indexes)")
            if stats:
                print(json.dumps(await manager.database_stats(code), indent=2))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Provision school databases")
    parser.add_argument("codes", nargs="+", help="school codes, e.g. NPS")
    parser.add_argument("--stats", action="store_true", help="print database stats after provisioning")
    args = parser.parse_args()
    asyncio.run(main(args.codes, args.stats))
