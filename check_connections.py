#!/usr/bin/env python3
"""
Check that the configured LDAP server is reachable and the group search works
"""

import sys
import logging
from dotenv import load_dotenv

from errors import DirectorySyncError
from ldap_client import LDAPGroupClient, SCOPES

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()


def check_ldap_connection(sample_group: str = "*") -> bool:
    """Bind with the configured credentials and run the group search once"""
    print("\n🔍 Checking LDAP Connection...")

    client = LDAPGroupClient.from_env()

    try:
        with client.session() as conn:
            print(f"✅ Connected to LDAP server: {client.server}")

            # Raw filter so that '*' acts as a wildcard here
            search_filter = client.group_search_filter % sample_group
            results = conn.search_ext_s(
                client.group_search_base,
                SCOPES[client.group_search_scope],
                search_filter,
                client.group_search_attributes,
                timeout=client.timeout,
            )

        entries = [dn for dn, _ in results if dn]
        print(f"✅ Found {len(entries)} groups matching {search_filter}")

        if entries:
            print("\n   Sample groups:")
            for dn in entries[:5]:
                print(f"   - {dn}")

        return True

    except DirectorySyncError as e:
        print(f"❌ LDAP connection failed: {e}")
        return False
    except Exception as e:
        print(f"❌ Error: {e}")
        return False


def main():
    print("🧪 Connection Check")
    print("=" * 60)

    ldap_ok = check_ldap_connection(*sys.argv[1:2])

    print("\n" + "=" * 60)
    print(f"   LDAP: {'✅ PASS' if ldap_ok else '❌ FAIL'}")

    return 0 if ldap_ok else 1


if __name__ == "__main__":
    sys.exit(main())
