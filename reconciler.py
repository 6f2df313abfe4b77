"""
Reconciliation loop for desired directory groups
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from errors import GroupNotFound, PersistConflict
from ldap_client import LDAPGroupClient
from resources import (
    CONDITION_FALSE,
    CONDITION_TRUE,
    DesiredGroup,
    set_status_condition,
)
from store import DesiredStateStore, NotFound


logger = logging.getLogger(__name__)

GROUP_FINALIZER = "groups.directory-sync/finalizer"

CONDITION_INITIALIZED = "Initialized"
CONDITION_CONFIGURED = "Configured"


@dataclass
class ReconciliationOutcome:
    name: str
    mutation_occurred: bool = False
    error: Optional[Exception] = None


class GroupReconciler:
    """
    Drives a single desired group towards the directory, one invocation at a time.

    Each call to reconcile() is idempotent. Failures are raised to the caller,
    which is expected to invoke reconcile() again later.
    """

    def __init__(self, store: DesiredStateStore, directory: LDAPGroupClient, max_conflict_retries: int = 3):
        self.store = store
        self.directory = directory
        self.max_conflict_retries = max_conflict_retries

    def _set_condition(self, group: DesiredGroup, condition_type: str, status: str):
        logger.info(f"Setting condition {condition_type}={status} on ldap-group {group.name}")
        set_status_condition(group.status.conditions, condition_type, status)

    def _persist(self, group: DesiredGroup, action: str) -> DesiredGroup:
        try:
            return self.store.update_status(group)
        except PersistConflict:
            raise
        except Exception as e:
            logger.error(f"Failed to {action} ldap-group {group.name}: {e}")
            raise

    def _log_conflict(self, retry_state: RetryCallState):
        name = retry_state.args[0]
        logger.warning(
            f"Conflicting update of ldap-group {name}, refetching (attempt {retry_state.attempt_number})"
        )

    def reconcile(self, name: str) -> ReconciliationOutcome:
        """Reconcile the named group, re-deciding after a store conflict."""
        logger.info(f"Reconciling ldap-group {name}")

        # Directory writes already done survive a conflicting status update
        written: Dict[str, object] = {}
        retrying = Retrying(
            retry=retry_if_exception_type(PersistConflict),
            stop=stop_after_attempt(self.max_conflict_retries + 1),
            before_sleep=self._log_conflict,
            reraise=True,
        )
        try:
            return retrying(self._reconcile_once, name, written)
        except PersistConflict:
            logger.error(f"Giving up on ldap-group {name} after {self.max_conflict_retries + 1} conflicting updates")
            raise

    def _reconcile_once(self, name: str, written: Dict[str, object]) -> ReconciliationOutcome:
        try:
            group = self.store.get(name)
        except NotFound:
            logger.info(f"ldap-group {name} not found in store, ignoring since it must have been deleted")
            return ReconciliationOutcome(name)

        if group.deletion_requested:
            return self._finalize(group, written)

        # The finalizer has to be stored before anything is written to the directory
        if not group.has_finalizer(GROUP_FINALIZER):
            group.add_finalizer(GROUP_FINALIZER)
            self._set_condition(group, CONDITION_INITIALIZED, CONDITION_TRUE)
            self._set_condition(group, CONDITION_CONFIGURED, CONDITION_FALSE)
            group = self._persist(group, "initialize")

        try:
            group_dn, changed = self.directory.reconcile_group(group.name, group.comment, group.members)
        except Exception as e:
            logger.error(f"Failed to converge ldap-group {name}: {e}")
            raise

        if changed:
            written["distinguished_name"] = group_dn
        elif "distinguished_name" not in written:
            return ReconciliationOutcome(name)

        # Configured is only ever set False here, never True
        group.status.distinguished_name = written["distinguished_name"]
        self._set_condition(group, CONDITION_CONFIGURED, CONDITION_FALSE)
        self._persist(group, "update status of")

        return ReconciliationOutcome(name, mutation_occurred=True)

    def _finalize(self, group: DesiredGroup, written: Dict[str, object]) -> ReconciliationOutcome:
        name = group.name

        if not group.has_finalizer(GROUP_FINALIZER):
            logger.debug(f"ldap-group {name} is being deleted and already finalized")
            return ReconciliationOutcome(name)

        try:
            self.directory.delete_group(name)
            written["deleted"] = True
        except GroupNotFound:
            logger.warning(f"ldap-group {name} not found in directory, nothing to delete")
        except Exception as e:
            logger.error(f"Error while removing ldap-group {name}: {e}")
            raise

        group.remove_finalizer(GROUP_FINALIZER)
        self._persist(group, "remove finalizer of")

        logger.info(f"Finalized ldap-group {name}")
        return ReconciliationOutcome(name, mutation_occurred=bool(written.get("deleted")))
