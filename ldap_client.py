"""
Directory sync engine: converges a single LDAP group towards its desired state
"""

import os
import logging
from contextlib import contextmanager
from typing import Iterable, List, Optional, Tuple

import ldap
import ldap.dn
import ldap.filter

from desired_adapter import DesiredGroupAdapter
from errors import (
    AmbiguousResult,
    DirectoryUnavailable,
    DirectoryWriteFailed,
    GroupNotFound,
)
from ldap_adapter import DirectoryGroupEntry, LDAPAdapter
from models import unique_members


logger = logging.getLogger(__name__)

SCOPE_BASE_OBJECT = "base"
SCOPE_SINGLE_LEVEL = "single"
SCOPE_WHOLE_SUBTREE = "sub"

SCOPES = {
    SCOPE_BASE_OBJECT: ldap.SCOPE_BASE,
    SCOPE_SINGLE_LEVEL: ldap.SCOPE_ONELEVEL,
    SCOPE_WHOLE_SUBTREE: ldap.SCOPE_SUBTREE,
}

OBJECT_CLASS = "objectClass"
UNIQUE_MEMBER = "uniqueMember"
DESCRIPTION = "description"
GROUP_OBJECT_CLASSES = ["top", "groupOfUniqueNames"]

DEFAULT_GROUP_FILTER = "(&(objectClass=groupOfUniqueNames)(cn=%s))"
DEFAULT_SEARCH_ATTRIBUTES = [DESCRIPTION, UNIQUE_MEMBER, OBJECT_CLASS]

# Failures of the connection itself, as opposed to the directory refusing a request
TRANSPORT_ERRORS = (ldap.SERVER_DOWN, ldap.TIMEOUT, ldap.CONNECT_ERROR)


def _encode(values: Iterable[str]) -> List[bytes]:
    return [value.encode('utf-8') for value in values]


class LDAPGroupClient:
    """
    Stateless client for group entries in an LDAP directory.

    Every public operation binds a fresh connection and releases it before
    returning, so directory state is never cached between calls.
    """

    def __init__(
        self,
        server: str,
        bind_dn: str,
        bind_password: str,
        group_search_base: str,
        group_search_scope: str = SCOPE_SINGLE_LEVEL,
        group_search_filter: str = DEFAULT_GROUP_FILTER,
        group_name_attribute: str = "cn",
        group_search_attributes: Optional[List[str]] = None,
        use_tls: bool = False,
        ca_cert_file: Optional[str] = None,
        network_timeout: float = 10.0,
        timeout: float = 30.0,
        dry_run: bool = False,
    ):
        if group_search_scope not in SCOPES:
            raise ValueError(
                f"Invalid group search scope '{group_search_scope}', "
                f"expected one of: {', '.join(SCOPES)}"
            )

        self.server = server
        self.bind_dn = bind_dn
        self.bind_password = bind_password
        self.group_search_base = group_search_base
        self.group_search_scope = group_search_scope
        self.group_search_filter = group_search_filter
        self.group_name_attribute = group_name_attribute
        self.group_search_attributes = group_search_attributes or list(DEFAULT_SEARCH_ATTRIBUTES)
        self.use_tls = use_tls
        self.ca_cert_file = ca_cert_file
        self.network_timeout = network_timeout
        self.timeout = timeout
        self.dry_run = dry_run

    @classmethod
    def from_env(cls) -> "LDAPGroupClient":
        """Build a client from LDAP_* environment variables."""
        attributes = os.getenv("LDAP_GROUP_SEARCH_ATTRIBUTES", ",".join(DEFAULT_SEARCH_ATTRIBUTES))

        return cls(
            server=os.getenv("LDAP_SERVER"),
            bind_dn=os.getenv("LDAP_BIND_DN"),
            bind_password=os.getenv("LDAP_BIND_PASSWORD"),
            group_search_base=os.getenv("LDAP_GROUP_BASE_DN"),
            group_search_scope=os.getenv("LDAP_GROUP_SEARCH_SCOPE", SCOPE_SINGLE_LEVEL),
            group_search_filter=os.getenv("LDAP_GROUP_FILTER", DEFAULT_GROUP_FILTER),
            group_name_attribute=os.getenv("LDAP_GROUP_NAME_ATTRIBUTE", "cn"),
            group_search_attributes=[a.strip() for a in attributes.split(',') if a.strip()],
            use_tls=os.getenv("LDAP_USE_TLS", "false").lower() == "true",
            ca_cert_file=os.getenv("LDAP_CA_CERT_FILE"),
            network_timeout=float(os.getenv("LDAP_NETWORK_TIMEOUT", "10")),
            timeout=float(os.getenv("LDAP_TIMEOUT", "30")),
            dry_run=os.getenv("SYNC_DRY_RUN", "false").lower() == "true",
        )

    def connect_ldap(self):
        """Open and bind a new connection to the LDAP server."""
        logger.debug(f"Connecting to LDAP server: {self.server}")

        # Configure TLS certificate verification if CA cert is provided
        if self.ca_cert_file and os.path.exists(self.ca_cert_file):
            ldap.set_option(ldap.OPT_X_TLS_CACERTFILE, self.ca_cert_file)
            ldap.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
        elif self.ca_cert_file:
            logger.warning(f"CA certificate file not found: {self.ca_cert_file}")

        try:
            conn = ldap.initialize(self.server)
        except ldap.LDAPError as e:
            logger.error(f"Failed to initialize LDAP connection to {self.server}: {e}")
            raise DirectoryUnavailable(f"Cannot initialize connection to {self.server}: {e}") from e

        try:
            conn.protocol_version = ldap.VERSION3
            conn.set_option(ldap.OPT_REFERRALS, 0)
            conn.set_option(ldap.OPT_NETWORK_TIMEOUT, self.network_timeout)
            conn.set_option(ldap.OPT_TIMEOUT, self.timeout)

            if self.use_tls and self.server.startswith("ldap://"):
                conn.start_tls_s()

            conn.simple_bind_s(self.bind_dn, self.bind_password)
        except ldap.LDAPError as e:
            logger.error(f"Failed to connect to LDAP: {e}")
            self.disconnect_ldap(conn)
            raise DirectoryUnavailable(f"Cannot bind to {self.server}: {e}") from e

        return conn

    def disconnect_ldap(self, conn):
        """Close an LDAP connection."""
        try:
            conn.unbind_s()
        except ldap.LDAPError as e:
            logger.warning(f"Error closing LDAP connection: {e}")

    @contextmanager
    def session(self):
        """Bound connection released on every exit path."""
        conn = self.connect_ldap()
        try:
            yield conn
        finally:
            self.disconnect_ldap(conn)

    def group_dn(self, name: str) -> str:
        """Distinguished name a group with this identity is created at."""
        return f"{self.group_name_attribute}={ldap.dn.escape_dn_chars(name)},{self.group_search_base}"

    def group_exists(self, name: str) -> Tuple[bool, Optional[DirectoryGroupEntry]]:
        """
        Search for the group with the configured base, scope and filter.
        Returns (False, None) when nothing matches.
        """
        search_filter = ldap.filter.filter_format(self.group_search_filter, [name])

        with self.session() as conn:
            try:
                results = conn.search_ext_s(
                    self.group_search_base,
                    SCOPES[self.group_search_scope],
                    search_filter,
                    self.group_search_attributes,
                    timeout=self.timeout,
                )
            except ldap.LDAPError as e:
                logger.error(f"LDAP search for ldap-group {name} failed: {e}")
                raise DirectoryUnavailable(f"Search for group {name} failed: {e}", name) from e

        # Search continuations come back without a DN
        entries = [(dn, attrs) for dn, attrs in results if dn]

        if not entries:
            return False, None

        if len(entries) > 1:
            matched = ", ".join(dn for dn, _ in entries)
            logger.error(f"Filter {search_filter} matched {len(entries)} entries for ldap-group {name}: {matched}")
            raise AmbiguousResult(f"Too many entries returned for group {name}", name)

        dn, attrs = entries[0]
        return True, DirectoryGroupEntry.from_search_result(dn, attrs, UNIQUE_MEMBER)

    @contextmanager
    def _write(self, name: str, action: str):
        """Map errors of a single write request onto the sync error taxonomy."""
        try:
            yield
        except TRANSPORT_ERRORS as e:
            logger.error(f"Lost connection while trying to {action} ldap-group {name}: {e}")
            raise DirectoryUnavailable(f"Cannot {action} group {name}: {e}", name) from e
        except ldap.LDAPError as e:
            logger.error(f"Failed to {action} ldap-group {name}: {e}")
            raise DirectoryWriteFailed(f"Cannot {action} group {name}: {e}", name) from e

    def create_group(self, name: str, comment: str, members: Iterable[str]) -> str:
        """Add a new group entry below the search base."""
        group_dn = self.group_dn(name)
        members = unique_members(members)

        modlist = [(OBJECT_CLASS, _encode(GROUP_OBJECT_CLASSES))]
        if comment:
            modlist.append((DESCRIPTION, _encode([comment])))
        if members:
            modlist.append((UNIQUE_MEMBER, _encode(members)))

        if self.dry_run:
            logger.info(f"[DRY RUN] Would create ldap-group {name} at {group_dn} with {len(members)} members")
            return group_dn

        with self.session() as conn:
            with self._write(name, "create"):
                conn.add_s(group_dn, modlist)

        logger.info(f"Created ldap-group {name} at {group_dn} with {len(members)} members")
        return group_dn

    def modify_group(self, name: str, group_dn: str, comment: str, members: Iterable[str]) -> str:
        """Replace object class, description and members in one modify request."""
        members = unique_members(members)

        # Replacing with None removes the attribute
        modlist = [
            (ldap.MOD_REPLACE, OBJECT_CLASS, _encode(GROUP_OBJECT_CLASSES)),
            (ldap.MOD_REPLACE, DESCRIPTION, _encode([comment]) if comment else None),
            (ldap.MOD_REPLACE, UNIQUE_MEMBER, _encode(members) if members else None),
        ]

        if self.dry_run:
            logger.info(f"[DRY RUN] Would modify ldap-group {name} at {group_dn} to {len(members)} members")
            return group_dn

        with self.session() as conn:
            with self._write(name, "modify"):
                conn.modify_s(group_dn, modlist)

        logger.info(f"Modified ldap-group {name} at {group_dn}, now {len(members)} members")
        return group_dn

    def delete_group(self, name: str) -> str:
        """Delete the group, raising GroupNotFound when it does not exist."""
        exists, entry = self.group_exists(name)
        if not exists:
            raise GroupNotFound(f"Group {name} was not found", name)

        if self.dry_run:
            logger.info(f"[DRY RUN] Would delete ldap-group {name} at {entry.dn}")
            return entry.dn

        with self.session() as conn:
            with self._write(name, "delete"):
                conn.delete_s(entry.dn)

        logger.info(f"Deleted ldap-group {name} at {entry.dn}")
        return entry.dn

    def reconcile_group(self, name: str, comment: str, members: Iterable[str]) -> Tuple[str, bool]:
        """
        Create or update the group so it matches the desired comment and members.

        Members are compared case- and order-insensitively, the description
        verbatim. Returns the group DN and whether a write was issued.
        """
        members = list(members)
        exists, entry = self.group_exists(name)

        observed = LDAPAdapter()
        observed.load_entry(name, entry)
        desired = DesiredGroupAdapter()
        desired.load_group(name, comment, members)

        observed.sync_from(desired)

        if not observed.pending_operations:
            logger.debug(f"ldap-group {name} is up to date")
            return entry.dn, False

        group_dn = entry.dn if exists else self.group_dn(name)
        for operation, _ in observed.pending_operations:
            if operation == 'create':
                group_dn = self.create_group(name, comment, members)
            elif operation == 'modify':
                group_dn = self.modify_group(name, group_dn, comment, members)

        return group_dn, True
