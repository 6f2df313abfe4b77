#!/usr/bin/env python3
"""
Directory Group Sync

Keeps LDAP groups in line with the desired groups described in a directory
of JSON documents. Groups are created, updated and, once marked for
deletion, removed from LDAP before their document disappears.
"""

import os
import logging
from dotenv import load_dotenv

from dispatcher import Dispatcher
from ldap_client import LDAPGroupClient
from reconciler import GroupReconciler
from resources import default_registry
from store import FileStore


# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_dispatcher(store: FileStore) -> Dispatcher:
    """Wire the directory client, reconciler and dispatcher from configuration."""
    directory = LDAPGroupClient.from_env()
    if directory.dry_run:
        logger.info("Running in DRY RUN mode - no changes will be made to LDAP")

    reconciler = GroupReconciler(store, directory)
    return Dispatcher(
        reconciler,
        workers=int(os.getenv("SYNC_WORKERS", "4")),
        base_delay=float(os.getenv("SYNC_RETRY_BASE_DELAY", "1")),
        max_delay=float(os.getenv("SYNC_RETRY_MAX_DELAY", "300")),
    )


def run_sync():
    """
    Main sync loop.
    Every group document is reconciled on startup and whenever it changes.
    """
    groups_directory = os.getenv("GROUPS_DIRECTORY", "./groups")
    logger.info(f"Starting directory group sync for {groups_directory}")

    registry = default_registry()
    store = FileStore(groups_directory, registry)
    dispatcher = build_dispatcher(store)

    store.watch(dispatcher.enqueue)
    for name in store.list():
        dispatcher.enqueue(name)

    observer = store.start_watching()
    try:
        dispatcher.run_forever(interval=float(os.getenv("SYNC_INTERVAL", "1")))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        dispatcher.stop()
    finally:
        observer.stop()
        observer.join()


if __name__ == "__main__":
    run_sync()
