"""
Album Sync Application

This is the main entry point for the Album Sync application.
It keeps virtual albums (saved hashtag/account queries over a Pixelfed
instance) refreshed in a local SQLite store, and exposes album management,
manual refreshes, ad hoc queries, favorites, runtime settings and the
scheduler status on the command line.

Output is JSON on stdout. Exit codes: 0 success, 1 handled error,
2 unexpected error.
"""

import sys
import json
import argparse
import logging
from typing import Any, List, Optional

from config import settings
from config.validators import validate_settings, get_config_summary
from utils.logger import get_logger, setup_file_logging
from utils.exceptions import AlbumSyncError, error_payload
from data.database import MetadataStore
from services.auth import FileTokenProvider
from services.pixelfed_client import PixelfedClient
from services.photo_fetcher import QueryResolver
from services.album_scheduler import AlbumScheduler
from services.album_service import AlbumService

# Set up logging
logger = get_logger(__name__)


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


class AlbumSync:
    """
    Main application class for Album Sync.

    Wires the metadata store, remote client, resolver, scheduler and album
    service together.
    """

    def __init__(self, db_path: Optional[str] = None,
                 store: Optional[MetadataStore] = None,
                 client: Optional[PixelfedClient] = None,
                 validate: bool = True):
        """
        Initialize the application components.

        Args:
            db_path: Album database path; defaults to settings.ALBUMS_DB_PATH.
            store: Metadata store to use instead of opening ``db_path``.
            client: Remote client to use instead of the token-file client.
            validate: Whether to validate settings first.
        """
        if validate:
            validate_settings()

        self.store = store or MetadataStore(db_path or settings.ALBUMS_DB_PATH)
        self.client = client or PixelfedClient(FileTokenProvider())
        self.resolver = QueryResolver(self.client)
        self.scheduler = AlbumScheduler(self.store, self.resolver)
        self.service = AlbumService(self.store, self.resolver, self.scheduler)

    def close(self) -> None:
        self.scheduler.stop()
        self.store.close()

    def run_scheduler(self) -> None:
        """Run the scheduler until interrupted."""
        self.scheduler.start()
        try:
            while not self.scheduler.wait(timeout=1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted; stopping scheduler")
        finally:
            self.scheduler.stop()
            logger.info(f"Scheduler status: {self.scheduler.status()['stats']}")

    def execute(self, args: argparse.Namespace) -> Any:
        """
        Run one command.

        Returns:
            The JSON-serializable command result, or None for commands
            without output.
        """
        command = args.command
        service = self.service

        if command == "run":
            self.run_scheduler()
            return None

        if command == "refresh":
            return service.refresh_album(args.album_id)

        if command == "query":
            return service.query_photos({
                "type": args.type,
                "tags": _split_csv(args.tags),
                "users": _split_csv(args.users),
                "tagmode": args.tagmode,
                "limit": args.limit,
            })

        if command == "photos":
            return service.list_photos(args.album_id, offset=args.offset, limit=args.limit)

        if command == "sweep":
            return service.sweep()

        if command == "status":
            return service.scheduler_status()

        if command == "favorites":
            action = args.action
            if action == "list":
                return service.list_favorites(offset=args.offset, limit=args.limit)
            if action == "add":
                return service.add_favorite(args.status_id, note=args.note)
            if action == "remove":
                return service.remove_favorite(args.status_id)
            if action == "check":
                return service.is_favorite(args.status_id)

        if command == "settings":
            if args.action == "set-interval":
                return service.set_sync_interval(args.interval_ms)
            return service.get_settings()

        if command == "albums":
            action = args.action
            if action == "list":
                return service.list_albums(offset=args.offset, limit=args.limit, enabled=args.enabled)
            if action == "create":
                payload = {
                    "name": args.name,
                    "query": {
                        "type": args.type,
                        "tags": _split_csv(args.tags),
                        "users": _split_csv(args.users),
                        "tagmode": args.tagmode,
                        "limit": args.limit,
                    },
                    "enabled": not args.disabled,
                }
                if args.interval_ms is not None:
                    payload["refresh"] = {"interval_ms": args.interval_ms}
                return service.create_album(payload)
            if action == "show":
                return service.get_album(args.album_id)
            if action == "enable":
                return service.set_enabled(args.album_id, True)
            if action == "disable":
                return service.set_enabled(args.album_id, False)
            if action == "delete":
                service.delete_album(args.album_id)
                return {"deleted": args.album_id}

        raise ValueError(f"Unknown command: {command}")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Album Sync Application')
    parser.add_argument('--log-file', type=str, default='album_sync.log', help='Log file path')
    parser.add_argument('--log-level', type=str, choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        default='INFO', help='Logging level')
    parser.add_argument('--db', type=str, default=None, help='Album database path')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('run', help='Run the refresh scheduler until interrupted')

    refresh = sub.add_parser('refresh', help='Refresh one album now')
    refresh.add_argument('album_id')

    query = sub.add_parser('query', help='Run an ad hoc query without storing results')
    query.add_argument('--type', choices=['tag', 'user', 'compound'], required=True)
    query.add_argument('--tags', type=str, default=None, help='Comma-separated hashtags')
    query.add_argument('--users', type=str, default=None, help='Comma-separated handles or account ids')
    query.add_argument('--tagmode', choices=['any', 'all'], default='any')
    query.add_argument('--limit', type=int, default=settings.DEFAULT_QUERY_LIMIT)

    photos = sub.add_parser('photos', help='List photos in an album')
    photos.add_argument('album_id')
    photos.add_argument('--offset', type=int, default=0)
    photos.add_argument('--limit', type=int, default=20)

    sub.add_parser('sweep', help='Delete photos no album references and nobody favorited')
    sub.add_parser('config', help='Validate and print the configuration summary')
    sub.add_parser('status', help='Show scheduler status and the last recorded run')

    favorites = sub.add_parser('favorites', help='Manage favorited photos')
    favorite_actions = favorites.add_subparsers(dest='action', required=True)
    favorite_list = favorite_actions.add_parser('list')
    favorite_list.add_argument('--offset', type=int, default=0)
    favorite_list.add_argument('--limit', type=int, default=20)
    favorite_add = favorite_actions.add_parser('add')
    favorite_add.add_argument('status_id')
    favorite_add.add_argument('--note', type=str, default=None)
    for action in ('remove', 'check'):
        favorite_actions.add_parser(action).add_argument('status_id')

    settings_cmd = sub.add_parser('settings', help='Show or change runtime settings')
    settings_actions = settings_cmd.add_subparsers(dest='action', required=True)
    settings_actions.add_parser('show')
    set_interval = settings_actions.add_parser('set-interval')
    set_interval.add_argument('interval_ms', type=int)

    albums = sub.add_parser('albums', help='Manage albums')
    actions = albums.add_subparsers(dest='action', required=True)

    album_list = actions.add_parser('list')
    album_list.add_argument('--offset', type=int, default=0)
    album_list.add_argument('--limit', type=int, default=20)
    enabled_group = album_list.add_mutually_exclusive_group()
    enabled_group.add_argument('--enabled', dest='enabled', action='store_const', const=True, default=None)
    enabled_group.add_argument('--disabled', dest='enabled', action='store_const', const=False)

    create = actions.add_parser('create')
    create.add_argument('--name', required=True)
    create.add_argument('--type', choices=['tag', 'user', 'compound'], required=True)
    create.add_argument('--tags', type=str, default=None, help='Comma-separated hashtags')
    create.add_argument('--users', type=str, default=None, help='Comma-separated handles or account ids')
    create.add_argument('--tagmode', choices=['any', 'all'], default='any')
    create.add_argument('--limit', type=int, default=settings.DEFAULT_QUERY_LIMIT)
    create.add_argument('--interval-ms', dest='interval_ms', type=int, default=None)
    create.add_argument('--disabled', action='store_true', help='Create the album disabled')

    for action in ('show', 'enable', 'disable', 'delete'):
        actions.add_parser(action).add_argument('album_id')

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    # Parse command line arguments
    args = parse_arguments(argv)

    # Set up logging
    log_level = getattr(logging, args.log_level)
    setup_file_logging(args.log_file, log_level)

    logger.info(f"Starting Album Sync command: {args.command}")

    app = None
    try:
        if args.command == 'config':
            validate_settings()
            _print_json(get_config_summary())
            return 0

        app = AlbumSync(db_path=args.db)
        result = app.execute(args)
        if result is not None:
            _print_json(result)
        exit_code = 0

    except AlbumSyncError as e:
        logger.error(f"{e.code}: {e.message}")
        _print_json(error_payload(e)[1])
        exit_code = 1
    except Exception as e:
        logger.error(f"Unhandled exception in Album Sync: {e}", exc_info=True)
        exit_code = 2
    finally:
        if app is not None:
            app.close()

    logger.info(f"Album Sync finished with exit code {exit_code}")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
