"""Shared pytest fixtures for the directory group sync tests.

Replaces python-ldap's connection with an in-memory directory so the sync
engine and reconciler can be exercised without an LDAP server.
"""

import os
import re
import sys

import ldap
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_client import LDAPGroupClient, SCOPE_SINGLE_LEVEL  # noqa: E402
from reconciler import GroupReconciler  # noqa: E402
from store import MemoryStore  # noqa: E402


BASE_DN = "ou=groups,dc=example,dc=com"

FILTER_ASSERTION = re.compile(r"\(([A-Za-z]+)=([^()]*)\)")


def _parent(dn):
    return dn.split(",", 1)[1] if "," in dn else ""


class FakeDirectory:
    """In-memory directory shared by every FakeLDAPConnection."""

    def __init__(self):
        self.entries = {}
        self.operations = []
        self.fail_on = {}
        self.connections_opened = 0
        self.connections_closed = 0

    def add_group(self, dn, description=None, members=(), object_classes=("top", "groupOfUniqueNames")):
        rdn_attr, rdn_value = dn.split(",", 1)[0].split("=", 1)
        attrs = {
            rdn_attr: [rdn_value.encode()],
            "objectClass": [c.encode() for c in object_classes],
        }
        if description is not None:
            attrs["description"] = [description.encode()]
        if members:
            attrs["uniqueMember"] = [m.encode() for m in members]
        self.entries[dn.lower()] = (dn, attrs)

    def get(self, dn):
        found = self.entries.get(dn.lower())
        return found[1] if found else None

    def writes(self):
        return [op for op in self.operations if op[0] in ("add", "modify", "delete")]

    def maybe_fail(self, operation):
        error = self.fail_on.get(operation)
        if error is not None:
            raise error


def _values(attrs, name):
    for key, values in attrs.items():
        if key.lower() == name.lower():
            return [v.decode().lower() for v in values]
    return []


def _reject_duplicate_values(values):
    """Multi-valued attributes hold each value once, compared case-insensitively."""
    if values and len({value.lower() for value in values}) != len(values):
        raise ldap.TYPE_OR_VALUE_EXISTS({"desc": "Type or value exists"})


class FakeLDAPConnection:
    def __init__(self, directory, uri):
        self.directory = directory
        self.uri = uri
        self.protocol_version = None
        self.options = {}
        self.bound = False

    def set_option(self, option, value):
        self.options[option] = value

    def start_tls_s(self):
        self.directory.operations.append(("starttls",))

    def simple_bind_s(self, who, cred):
        self.directory.maybe_fail("bind")
        self.directory.operations.append(("bind", who))
        self.bound = True

    def unbind_s(self):
        self.directory.connections_closed += 1

    def search_ext_s(self, base, scope, filterstr="(objectClass=*)", attrlist=None, timeout=-1):
        self.directory.maybe_fail("search")
        self.directory.operations.append(("search", base, scope, filterstr))

        assertions = FILTER_ASSERTION.findall(filterstr)
        results = []
        for dn, attrs in self.directory.entries.values():
            lowered = dn.lower()
            if scope == ldap.SCOPE_BASE and lowered != base.lower():
                continue
            if scope == ldap.SCOPE_ONELEVEL and _parent(lowered) != base.lower():
                continue
            if scope == ldap.SCOPE_SUBTREE and not lowered.endswith(base.lower()):
                continue
            if all(value.lower() in _values(attrs, attr) for attr, value in assertions):
                wanted = {a.lower() for a in attrlist} if attrlist else None
                returned = {k: list(v) for k, v in attrs.items() if wanted is None or k.lower() in wanted}
                results.append((dn, returned))
        return results

    def add_s(self, dn, modlist):
        self.directory.maybe_fail("add")
        if dn.lower() in self.directory.entries:
            raise ldap.ALREADY_EXISTS({"desc": "Already exists"})
        for _, values in modlist:
            _reject_duplicate_values(values)
        self.directory.operations.append(("add", dn, modlist))

        rdn_attr, rdn_value = dn.split(",", 1)[0].split("=", 1)
        attrs = {rdn_attr: [rdn_value.encode()]}
        attrs.update({attr: list(values) for attr, values in modlist})
        self.directory.entries[dn.lower()] = (dn, attrs)

    def modify_s(self, dn, modlist):
        self.directory.maybe_fail("modify")
        if dn.lower() not in self.directory.entries:
            raise ldap.NO_SUCH_OBJECT({"desc": "No such object"})
        for _, _, values in modlist:
            _reject_duplicate_values(values)
        self.directory.operations.append(("modify", dn, modlist))

        _, attrs = self.directory.entries[dn.lower()]
        for op, attr, values in modlist:
            assert op == ldap.MOD_REPLACE
            attrs.pop(attr, None)
            if values:
                attrs[attr] = list(values)

    def delete_s(self, dn):
        self.directory.maybe_fail("delete")
        if dn.lower() not in self.directory.entries:
            raise ldap.NO_SUCH_OBJECT({"desc": "No such object"})
        self.directory.operations.append(("delete", dn))
        del self.directory.entries[dn.lower()]


@pytest.fixture
def fake_directory(monkeypatch):
    """Patch ldap.initialize to hand out connections to an in-memory directory."""
    directory = FakeDirectory()

    def initialize(uri, *args, **kwargs):
        directory.maybe_fail("initialize")
        directory.connections_opened += 1
        return FakeLDAPConnection(directory, uri)

    monkeypatch.setattr(ldap, "initialize", initialize)
    return directory


@pytest.fixture
def client(fake_directory):
    return LDAPGroupClient(
        server="ldap://ldap.example.com",
        bind_dn="cn=admin,dc=example,dc=com",
        bind_password="secret",
        group_search_base=BASE_DN,
        group_search_scope=SCOPE_SINGLE_LEVEL,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def reconciler(store, client):
    return GroupReconciler(store, client)
