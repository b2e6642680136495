#!/usr/bin/env python3
"""
Database setup script for the fleet controller
Creates the schema and seeds the default SNI pool, group and template
"""

import argparse
import asyncio
import sys

from vpnfleet.bootstrap import seed_defaults
from vpnfleet.core.config import config
from vpnfleet.core.database import database
from vpnfleet.core.logging import setup_logging


class FleetMigration:
    """Schema creation and default data"""

    def __init__(self, database_url=None):
        self.settings = config.settings
        if database_url:
            database.configure(database_url)

    async def run(self):
        print("\n" + "=" * 50)
        print("VPN fleet controller database setup")
        print("=" * 50 + "\n")

        try:
            summary = await seed_defaults(database, self.settings)
            print("✓ Schema is up to date")
            print(f"✓ Added {summary['sni_added']} default SNI domains")
            if summary["group_created"]:
                print("✓ Created default node group")
            if summary["template_created"]:
                print("✓ Created default VLESS Reality template")
        except Exception as e:
            print(f"\n✗ Setup failed: {e}")
            sys.exit(1)
        finally:
            await database.dispose()


def main():
    parser = argparse.ArgumentParser(description="Create and seed the fleet controller database")
    parser.add_argument("--database-url", help="Override VPNFLEET_DATABASE_URL")
    args = parser.parse_args()

    setup_logging(config.settings.log_level, "text")
    asyncio.run(FleetMigration(args.database_url).run())


if __name__ == "__main__":
    main()
