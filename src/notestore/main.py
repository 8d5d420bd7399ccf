#!/usr/bin/env python
"""Command line entry point for inspecting and maintaining a note store."""
import argparse
import logging
import os
import sys
from pathlib import Path

from notestore import __version__
from notestore.config import config
from notestore.exceptions import NoteStoreError
from notestore.observability import configure_logging
from notestore.services.note_store import NoteStore
from notestore.storage.secret_store import KeyringSecretStore


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Encrypted note store maintenance")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("NOTESTORE_DATABASE_PATH")
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("NOTESTORE_LOG_LEVEL", "WARNING")
    )
    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", help="List notes in display order")
    list_cmd.add_argument("--filter", default="", help="Only notes matching this text")

    add_cmd = commands.add_parser("add", help="Add a note at the top of the list")
    add_cmd.add_argument("--title", default="", help="Note title")
    add_cmd.add_argument("--body", default="", help="Note text")

    commands.add_parser("status", help="Show database path, encryption and note count")
    commands.add_parser("encrypt", help="Encrypt the database under a new key")
    commands.add_parser("decrypt", help="Decrypt the database and forget its key")
    return parser.parse_args(argv)


def update_config(args):
    """Update the global config with command line arguments."""
    if args.database_path:
        config.database_path = Path(args.database_path)


def run_command(store: NoteStore, args) -> bool:
    """Run one subcommand against an open store. Returns False on failure."""
    if args.command == "list":
        store.set_filter(args.filter)
        for note in store.items:
            star = "*" if note.favorite else " "
            print(f"{star} {note.date:%Y-%m-%d %H:%M}  {note.display_title}  [{note.id}]")
        return store.error_message is None

    if args.command == "add":
        note = store.add()
        if note is None:
            return False
        if args.title or args.body:
            note = note.model_copy(update={"title": args.title, "notes": args.body})
            if not store.save(note):
                return False
        print(note.id)
        return True

    if args.command == "status":
        store.set_filter("")
        print(f"Database:  {store.database_path}")
        print(f"Encrypted: {'yes' if store.encrypted else 'no'}")
        print(f"Schema:    version {store.schema_version()}")
        print(f"Notes:     {len(store.items)}")
        return True

    # encrypt / decrypt
    return store.set_encrypted(args.command == "encrypt")


def main(argv=None):
    """Run the notestore command line tool."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    try:
        configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")

    logger = logging.getLogger(__name__)

    try:
        store = NoteStore.open(secret_store=KeyringSecretStore(config.keyring_service))
    except NoteStoreError as e:
        logger.error(f"Failed to open note store: {e}")
        sys.exit(1)

    with store:
        ok = run_command(store, args)
        if not ok:
            logger.error(f"{args.command} failed: {store.error_message}")
            sys.exit(1)


if __name__ == "__main__":
    main()
