# timeflow_client/cli.py

import argparse
import getpass
import logging
import sys
import time
from typing import List

from . import config
from .activities import ActivityNode
from .context import AppContext
from .errors import TimeFlowClientError

log = logging.getLogger("timeflow_client.cli")


def setup_logging(debug: bool = False) -> None:
    """Console logging plus an optional file handler."""
    log_format = "%(asctime)s - %(levelname)s - [%(threadName)s:%(name)s] - %(message)s"
    log_level = logging.DEBUG if debug else getattr(logging, config.LOG_LEVEL, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(console_handler)

    if config.LOG_FILE:
        try:
            file_handler = logging.FileHandler(config.LOG_FILE, mode="a")
            file_handler.setFormatter(logging.Formatter(log_format))
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Error setting up file logger at {config.LOG_FILE}: {e}", file=sys.stderr)

    logging.getLogger("apscheduler.scheduler").setLevel(logging.WARNING)
    logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.INFO)


def describe_status(ctx: AppContext) -> str:
    timer = ctx.timer
    timer.tick()
    if timer.current_session is not None and timer.is_tracking:
        line = f"Tracking '{timer.current_session.activity.name}' for {timer.formatted_time}"
    else:
        line = "Not tracking"
    mode = "online" if ctx.driver.is_online else ("offline (forced)" if ctx.driver.forced_offline else "offline")
    return f"{line} [{mode}, {ctx.driver.pending_count} pending, {timer.sync_state.value.lower()}]"


def render_tree(nodes: List[ActivityNode], depth: int = 0):
    for node in nodes:
        marker = " (default)" if node.activity.get("isDefault") else ""
        yield f"{'  ' * depth}{node.id:>4}  {node.name}{marker}"
        yield from render_tree(node.children, depth + 1)


def handle_login(args_ns, ctx: AppContext):
    password = args_ns.password or getpass.getpass("Password: ")
    data = ctx.api.login(args_ns.email, password)
    ctx.save_token(data.get("access_token"))
    ctx.activities.fetch()
    ctx.timer.fetch_current_session()
    print(f"Logged in as {data.get('user', {}).get('email', args_ns.email)}")


def handle_status(args_ns, ctx: AppContext):
    print(describe_status(ctx))


def handle_switch(args_ns, ctx: AppContext):
    activity = ctx.activities.get(args_ns.activity_id)
    if activity is None:
        log.warning(f"Activity {args_ns.activity_id} is not in the local cache")
    ctx.timer.switch_activity(args_ns.activity_id, activity)
    print(describe_status(ctx))


def handle_stop(args_ns, ctx: AppContext):
    stopped = ctx.timer.stop_tracking()
    if stopped is None:
        print("Not tracking")
    else:
        print(f"Stopped '{stopped.activity.name}'")


def handle_resume(args_ns, ctx: AppContext):
    if ctx.timer.resume_tracking() is None:
        print("No default activity; run `timeflow activities` while online first", file=sys.stderr)
        sys.exit(1)
    print(describe_status(ctx))


def handle_activities(args_ns, ctx: AppContext):
    if ctx.driver.is_online:
        ctx.activities.fetch()
    if not ctx.activities.activities:
        print("No activities cached")
        return
    for line in render_tree(ctx.activities.tree):
        print(line)


def handle_sync(args_ns, ctx: AppContext):
    if not ctx.driver.pending_count:
        print("Nothing to sync")
        return
    if not ctx.driver.is_online:
        print(f"Offline; {ctx.driver.pending_count} event(s) stay queued", file=sys.stderr)
        sys.exit(1)
    outcome = ctx.driver.sync_to_server()
    if outcome is None:
        print(f"Sync failed; {ctx.driver.pending_count} event(s) stay queued", file=sys.stderr)
        sys.exit(1)
    print(f"Synced {len(outcome.processed_local_ids)} event(s), {outcome.remaining} remaining")


def handle_offline(args_ns, ctx: AppContext):
    ctx.driver.go_offline()
    print("Offline mode on; changes will be queued locally")


def handle_online(args_ns, ctx: AppContext):
    if ctx.driver.try_go_online():
        print(f"Online; {ctx.driver.pending_count} event(s) pending")
    else:
        print("Server not reachable; still offline", file=sys.stderr)
        sys.exit(1)


def handle_watch(args_ns, ctx: AppContext):
    try:
        while True:
            print(f"\r{describe_status(ctx)}", end="", flush=True)
            time.sleep(config.CLOCK_TICK_SECONDS)
    except (KeyboardInterrupt, SystemExit):
        print()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="timeflow", description="TimeFlow: offline-first time tracking")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument("--db", default=config.LOCAL_STORE_DB_PATH, help="Path to the local state database.")
    subparsers = parser.add_subparsers(dest="command", title="Available Commands", required=True)

    parser_login = subparsers.add_parser("login", help="Log in and store the access token locally.")
    parser_login.add_argument("email")
    parser_login.add_argument("--password", help="Prompted for when omitted.")
    parser_login.set_defaults(func=handle_login)

    subparsers.add_parser("status", help="Show what is being tracked.").set_defaults(func=handle_status)

    parser_switch = subparsers.add_parser("switch", help="Switch to another activity.")
    parser_switch.add_argument("activity_id", type=int)
    parser_switch.set_defaults(func=handle_switch)

    subparsers.add_parser("stop", help="Stop tracking.").set_defaults(func=handle_stop)
    subparsers.add_parser("resume", help="Start tracking the default activity.").set_defaults(func=handle_resume)
    subparsers.add_parser("activities", help="List activities as a tree.").set_defaults(func=handle_activities)
    subparsers.add_parser("sync", help="Send queued events to the server.").set_defaults(func=handle_sync)
    subparsers.add_parser("offline", help="Force offline mode.").set_defaults(func=handle_offline)
    subparsers.add_parser("online", help="Leave offline mode and sync.").set_defaults(func=handle_online)
    parser_watch = subparsers.add_parser("watch", help="Show a live clock until interrupted.")
    parser_watch.set_defaults(func=handle_watch, background=True)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)

    ctx = AppContext(db_path=args.db)
    try:
        ctx.init(background=getattr(args, "background", False))
        args.func(args, ctx)
    except TimeFlowClientError as e:
        log.error(f"{args.command} failed: {e}")
        sys.exit(1)
    finally:
        ctx.teardown()


if __name__ == "__main__":
    main()
