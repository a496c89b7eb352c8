"""Main entry point for the sbridge CLI tool."""

import argparse
import sys

from .client import BridgeClient
from . import commands


def main():
    """Main entry point for sbridge CLI."""
    parser = argparse.ArgumentParser(
        prog="sbridge",
        description="Session bridge CLI - record and replay terminal sessions",
    )
    parser.add_argument("--api-url", help="API base URL (default: $SBRIDGE_API_URL)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("status", help="Working/recording counts and open sessions")
    subparsers.add_parser("sessions", help="List sessions")

    record_parser = subparsers.add_parser("record", help="Start or stop recording a session")
    record_parser.add_argument("action", choices=["start", "stop"])
    record_parser.add_argument("session", help="Session id or name")
    record_parser.add_argument("--name", help="Recording name (start only)")

    recordings_parser = subparsers.add_parser("recordings", help="List, show or delete recordings")
    recordings_parser.add_argument("action", nargs="?", choices=["show", "delete"])
    recordings_parser.add_argument("recording_id", nargs="?")

    replay_parser = subparsers.add_parser("replay", help="Replay a recording into a new session")
    replay_parser.add_argument("target", help="Recording id to start a replay, or next/close")
    replay_parser.add_argument("replay_id", nargs="?", help="Open replay id (next/close only)")
    replay_parser.add_argument("--all", action="store_true", help="Send every remaining step")

    serve_parser = subparsers.add_parser("serve", help="Run the session bridge server")
    serve_parser.add_argument("--config", help="Path to config.yaml")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    if args.command == "serve":
        from ..main import run
        run(args.config)
        sys.exit(0)

    client = BridgeClient(args.api_url)

    if args.command == "status":
        sys.exit(commands.cmd_status(client))
    elif args.command == "sessions":
        sys.exit(commands.cmd_sessions(client))
    elif args.command == "record":
        sys.exit(commands.cmd_record(client, args.action, args.session, args.name))
    elif args.command == "recordings":
        if not args.action:
            sys.exit(commands.cmd_recordings(client))
        if not args.recording_id:
            print(f"Error: recordings {args.action} requires a recording id", file=sys.stderr)
            sys.exit(2)
        if args.action == "show":
            sys.exit(commands.cmd_recording_show(client, args.recording_id))
        sys.exit(commands.cmd_recording_delete(client, args.recording_id))
    elif args.command == "replay":
        if args.target not in ("next", "close"):
            sys.exit(commands.cmd_replay(client, args.target, args.all))
        if not args.replay_id:
            print(f"Error: replay {args.target} requires a replay id", file=sys.stderr)
            sys.exit(2)
        if args.target == "next":
            sys.exit(commands.cmd_replay_next(client, args.replay_id, args.all))
        sys.exit(commands.cmd_replay_close(client, args.replay_id))


if __name__ == "__main__":
    main()
