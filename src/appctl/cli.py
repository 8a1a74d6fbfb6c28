#!/usr/bin/env python3
"""
appctl command line.

Usage:
    appctl [options] <command> <app-id|all> [args...]

The literal ``all`` runs the command for every installed app: one child
``python -m appctl`` process per app, started concurrently. A failing child
never stops its siblings; the overall exit code is non-zero if any failed.
"""

from __future__ import annotations

import argparse
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .cli_utils import get_cli_version
from .config import load_settings
from .config_constants import FAN_OUT_TOKEN
from .exceptions import AppctlError
from .lifecycle import AppLifecycle, terminate_as_exit
from .manifest import load_settings_overlay, save_settings_overlay
from .repository import locate_app_dir


logger = logging.getLogger(__name__)

APP_COMMANDS = (
    'install',
    'uninstall',
    'reinstall',
    'start',
    'stop',
    'restart',
    'update',
    'logs',
    'compose',
    'ls-dependencies',
    'ls-transitive-dependencies',
)

FAN_OUT_COMMANDS = ('install', 'uninstall', 'reinstall', 'start', 'stop', 'restart', 'update')


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure logging module with specified level.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR
    }

    level = level_map.get(log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='[%(levelname)s] %(message)s',
        force=True
    )

    logger.debug(f"Logging configured: {log_level.upper()}")


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Global options:
    1. --root <path> - appctl root directory (default: $APPCTL_ROOT or /opt/appctl)
    2. --log-level <level> - DEBUG, INFO, WARNING, ERROR
    3. --dry-run - Log docker commands and hooks instead of running them
    """
    parser = argparse.ArgumentParser(
        prog='appctl',
        description='appctl: install, run and update apps on this host',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Install an app from the first repository that provides it
  %(prog)s install bitcoin

  # Restart every installed app
  %(prog)s restart all

  # Update without starting the app afterwards
  %(prog)s update bitcoin --skip-start

  # Follow logs
  %(prog)s logs bitcoin --follow

  # Use an alternative implementation of a dependency
  %(prog)s set-dependency lightning bitcoin bitcoin-knots
        '''
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {get_cli_version()}")
    parser.add_argument(
        '--root',
        type=Path,
        default=None,
        metavar='PATH',
        help='appctl root directory (default: $APPCTL_ROOT or /opt/appctl)'
    )
    parser.add_argument(
        '--log-level',
        default=None,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        type=str.upper,
        help='Log level (default: from settings, INFO)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=None,
        help='Log docker commands and hooks instead of running them'
    )

    subparsers = parser.add_subparsers(dest='command', required=True, metavar='COMMAND')

    for name in APP_COMMANDS:
        sub = subparsers.add_parser(name, help=f'{name} an app (or "{FAN_OUT_TOKEN}")')
        sub.add_argument('app', metavar='APP', help=f'App id, or "{FAN_OUT_TOKEN}" for every installed app')
        if name == 'install':
            sub.add_argument('--repo', default=None, help='Repository to install from')
        if name == 'update':
            sub.add_argument('--skip-stop', action='store_true', help='Do not stop the app before updating')
            sub.add_argument('--skip-start', action='store_true', help='Do not start the app after updating')
        if name in ('logs', 'compose'):
            sub.add_argument('args', nargs=argparse.REMAINDER, help='Arguments passed to docker compose')

    subparsers.add_parser('ls-installed', help='List installed apps')

    set_dep = subparsers.add_parser('set-dependency', help='Substitute a dependency of an app')
    set_dep.add_argument('app', metavar='APP')
    set_dep.add_argument('dependency', metavar='DEPENDENCY')
    set_dep.add_argument('substitute', metavar='SUBSTITUTE', nargs='?', default=None,
                         help='Replacement app id (omit to remove the substitution)')

    return parser.parse_args(argv)


def _child_argv(args: argparse.Namespace, app_id: str) -> List[str]:
    cmd = [sys.executable, '-m', 'appctl']
    if args.root is not None:
        cmd += ['--root', str(args.root)]
    if args.log_level:
        cmd += ['--log-level', args.log_level]
    if args.dry_run:
        cmd.append('--dry-run')
    cmd += [args.command, app_id]
    if args.command == 'update':
        if args.skip_stop:
            cmd.append('--skip-stop')
        if args.skip_start:
            cmd.append('--skip-start')
    return cmd


def fan_out(args: argparse.Namespace, app_ids: List[str]) -> int:
    """Run the command for every app concurrently and wait for all."""
    if not app_ids:
        logger.info("No installed apps")
        return 0

    logger.info(f"Running '{args.command}' for {len(app_ids)} app(s): {', '.join(app_ids)}")
    children: Dict[str, subprocess.Popen] = {}
    for app_id in app_ids:
        children[app_id] = subprocess.Popen(_child_argv(args, app_id), env=os.environ.copy())

    failed = []
    for app_id, child in children.items():
        returncode = child.wait()
        if returncode != 0:
            logger.error(f"'{args.command}' failed for {app_id} (exit {returncode})")
            failed.append(app_id)
        else:
            logger.info(f"'{args.command}' completed for {app_id}")

    if failed:
        logger.error(f"{len(failed)} of {len(app_ids)} app(s) failed: {', '.join(failed)}")
        return 1
    return 0


def set_dependency(settings, app_id: str, dependency: str, substitute: Optional[str]) -> None:
    app_dir = locate_app_dir(settings, app_id)
    overrides = load_settings_overlay(app_dir, app_id)
    if substitute and substitute != dependency:
        overrides[dependency] = substitute
        logger.info(f"{app_id}: {dependency} -> {substitute}")
    else:
        overrides.pop(dependency, None)
        logger.info(f"{app_id}: {dependency} substitution removed")
    save_settings_overlay(app_dir, overrides)


def run_command(args: argparse.Namespace, lifecycle: AppLifecycle) -> int:
    command = args.command

    if command == 'ls-installed':
        for app_id in lifecycle.ls_installed():
            print(app_id)
        return 0

    if command == 'set-dependency':
        set_dependency(lifecycle.settings, args.app, args.dependency, args.substitute)
        return 0

    app_id = args.app
    if app_id == FAN_OUT_TOKEN:
        if command not in FAN_OUT_COMMANDS:
            raise SystemExit(f"'{command}' does not support '{FAN_OUT_TOKEN}'")
        return fan_out(args, lifecycle.ls_installed())

    if command == 'install':
        lifecycle.install(app_id, repo=args.repo)
    elif command == 'uninstall':
        lifecycle.uninstall(app_id)
    elif command == 'reinstall':
        lifecycle.reinstall(app_id)
    elif command == 'start':
        lifecycle.start(app_id)
    elif command == 'stop':
        lifecycle.stop(app_id)
    elif command == 'restart':
        lifecycle.restart(app_id)
    elif command == 'update':
        lifecycle.update(app_id, skip_stop=args.skip_stop, skip_start=args.skip_start)
    elif command == 'logs':
        lifecycle.logs(app_id, args.args)
    elif command == 'compose':
        lifecycle.compose(app_id, args.args)
    elif command == 'ls-dependencies':
        for dependency in lifecycle.ls_dependencies(app_id):
            print(dependency)
    elif command == 'ls-transitive-dependencies':
        for dependency in lifecycle.ls_transitive_dependencies(app_id):
            print(dependency)
    else:
        raise SystemExit(f"Unknown command: {command}")
    return 0


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)

    # Preliminary level until settings are known
    configure_logging(args.log_level or os.environ.get('APPCTL_LOG_LEVEL', 'INFO'))

    try:
        with terminate_as_exit():
            settings = load_settings(args.root, dry_run=args.dry_run, log_level=args.log_level)
            configure_logging(settings.log_level)
            lifecycle = AppLifecycle(settings)
            return run_command(args, lifecycle)
    except AppctlError as e:
        print(f"[ERROR] {e}", file=sys.stderr, flush=True)
        logger.debug("Details", exc_info=True)
        return 1
    except ValueError as e:
        message = str(e)
        print(message if message.startswith('[ERROR]') else f"[ERROR] {message}", file=sys.stderr, flush=True)
        return 1
    except KeyboardInterrupt:
        print("\n[WARN] Interrupted", file=sys.stderr, flush=True)
        return 130


if __name__ == '__main__':
    raise SystemExit(main())
