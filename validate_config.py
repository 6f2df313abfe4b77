#!/usr/bin/env python3
"""
Validate the configuration of the directory group sync
"""

import os
import sys
from dotenv import load_dotenv

from ldap_client import DEFAULT_GROUP_FILTER, SCOPES, SCOPE_SINGLE_LEVEL

# Load environment variables
load_dotenv()

REQUIRED_VARS = [
    'LDAP_SERVER',
    'LDAP_BIND_DN',
    'LDAP_BIND_PASSWORD',
    'LDAP_GROUP_BASE_DN',
]


def validate_config():
    """Validate that all required configuration is set and well formed"""
    problems = []

    for var in REQUIRED_VARS:
        if not os.getenv(var):
            problems.append(f"{var} is not set")

    scope = os.getenv('LDAP_GROUP_SEARCH_SCOPE', SCOPE_SINGLE_LEVEL)
    if scope not in SCOPES:
        problems.append(f"LDAP_GROUP_SEARCH_SCOPE must be one of {', '.join(SCOPES)}, got '{scope}'")

    group_filter = os.getenv('LDAP_GROUP_FILTER', DEFAULT_GROUP_FILTER)
    if group_filter.count('%s') != 1:
        problems.append("LDAP_GROUP_FILTER must contain exactly one %s placeholder")

    for var in ('LDAP_NETWORK_TIMEOUT', 'LDAP_TIMEOUT', 'SYNC_INTERVAL',
                'SYNC_RETRY_BASE_DELAY', 'SYNC_RETRY_MAX_DELAY'):
        value = os.getenv(var)
        if value is None:
            continue
        try:
            float(value)
        except ValueError:
            problems.append(f"{var} must be a number, got '{value}'")

    if problems:
        print("❌ Invalid configuration:")
        for problem in problems:
            print(f"   - {problem}")
        return False

    print("✅ Configuration is valid")
    return True


def display_config():
    """Display current configuration (masking sensitive values)"""
    print("\n📋 Current Configuration:")
    print(f"   LDAP Server: {os.getenv('LDAP_SERVER')}")
    print(f"   LDAP Bind DN: {os.getenv('LDAP_BIND_DN')}")
    print(f"   LDAP Group Base DN: {os.getenv('LDAP_GROUP_BASE_DN')}")
    print(f"   LDAP Group Search Scope: {os.getenv('LDAP_GROUP_SEARCH_SCOPE', SCOPE_SINGLE_LEVEL)}")
    print(f"   LDAP Group Filter: {os.getenv('LDAP_GROUP_FILTER', DEFAULT_GROUP_FILTER)}")
    print(f"   LDAP Group Name Attribute: {os.getenv('LDAP_GROUP_NAME_ATTRIBUTE', 'cn')}")
    print(f"   Groups Directory: {os.getenv('GROUPS_DIRECTORY', './groups')}")
    print(f"   Dry Run Mode: {os.getenv('SYNC_DRY_RUN', 'false')}")
    print()


if __name__ == "__main__":
    print("🔍 Directory Group Sync - Configuration Validator\n")

    if validate_config():
        display_config()
        print("✅ You can now run:")
        print("   python sync.py")
        sys.exit(0)
    else:
        print("\n❌ Please update your .env file")
        sys.exit(1)
