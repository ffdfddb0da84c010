"""
Main entry point for the system-updater command-line tool.
"""

# SPDX-License-Identifier: GPL-3.0-or-later

import argparse
import logging
import sys
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

import requests

from ..config import CONFIG_SCHEMA, Config, parse_config_value
from ..constants import APP_SLUG, APP_VERSION, ExitCode, get_builtin_targets_dir, get_user_targets_dir
from ..context import RunContext
from ..exceptions import ConfigurationError, InsufficientPrivilegeError
from ..models import ConfirmationPolicy, Target
from ..orchestrator import Orchestrator, exit_code_for
from ..registry import TargetRegistry
from ..utils.command import CommandRunner
from ..utils.instance_lock import InstanceAlreadyRunningError, InstanceLock, InstanceLockError
from ..utils.interrupt import InterruptGuard
from ..utils.logger import get_logger, set_global_config
from ..utils.update_history import UpdateHistoryManager
from .output import ConsoleSink, OutputFormatter

logger = get_logger(__name__)

# Config keys never echoed back in full
SECRET_KEYS = ("github_token",)


class SystemUpdaterCLI:
    """Main CLI application class."""

    def __init__(self, config_path: Optional[str] = None,
                 runner: Optional[CommandRunner] = None,
                 session: Optional[requests.Session] = None,
                 input_func: Callable[[str], str] = input,
                 lock_dir: Optional[Union[str, Path]] = None,
                 history_path: Optional[str] = None) -> None:
        """
        Initialize CLI with configuration.

        Args:
            config_path: Alternative config file path
            runner: Command runner (subprocess-based if omitted)
            session: HTTP session (created per run if omitted)
            input_func: Reads answers to prompts
            lock_dir: Directory for the single-instance lock file
            history_path: Alternative update history file
        """
        self.config = Config(config_path)
        self.runner = runner
        self.session = session
        self.input_func = input_func
        self.lock_dir = lock_dir
        self.update_history = UpdateHistoryManager(
            path=history_path,
            retention_days=self.config.get_history_retention_days()
        )
        self.formatter: OutputFormatter = OutputFormatter()

    def run(self, args: argparse.Namespace) -> int:
        """
        Run the CLI with given arguments.

        Args:
            args: Parsed command line arguments

        Returns:
            Exit code
        """
        # Initialize formatter with global options
        self.formatter = OutputFormatter(
            use_color=not args.no_color and sys.stdout.isatty(),
            json_output=args.json,
            quiet=args.quiet
        )

        # Dispatch to sub-command handler
        if args.command is None or args.command == 'run':
            return self.cmd_run(args)
        elif args.command == 'check':
            return self.cmd_check(args)
        elif args.command == 'list':
            return self.cmd_list(args)
        elif args.command == 'history':
            return self.cmd_history(args)
        elif args.command == 'config':
            return self.cmd_config(args)
        else:
            self.formatter.error(f"Unknown command: {args.command}")
            return ExitCode.GENERAL

    def _load_targets(self, args: argparse.Namespace) -> Tuple[TargetRegistry, List[Target]]:
        """
        Load the registry and apply ``--only``.

        Built-in descriptors load first, then configured directories, then
        ``--targets-dir`` arguments and finally the user's targets directory.

        Raises:
            ConfigurationError: If ``--only`` names an unknown target
        """
        registry = TargetRegistry(disabled=self.config.get_disabled_targets())
        user_dir = get_user_targets_dir()
        directories: List[Union[str, Path]] = [get_builtin_targets_dir()]
        directories.extend(self.config.get_targets_dirs())
        directories.extend(args.targets_dir or [])
        directories.append(user_dir)
        registry.load_directories(directories, optional=[user_dir])

        only: List[str] = []
        for value in args.only or []:
            only.extend(item.strip() for item in value.split(',') if item.strip())
        return registry, registry.select(only)

    def _policy(self, args: argparse.Namespace) -> ConfirmationPolicy:
        if args.dry_run:
            return ConfirmationPolicy.DRY_RUN
        if args.yes:
            return ConfirmationPolicy.ALWAYS_YES
        return self.config.get_confirmation_policy()

    def cmd_run(self, args: argparse.Namespace, policy: Optional[ConfirmationPolicy] = None) -> int:
        """Handle 'run' command - check every target and apply updates."""
        policy = policy or self._policy(args)

        try:
            registry, targets = self._load_targets(args)
        except ConfigurationError as e:
            self.formatter.error(str(e))
            return ExitCode.GENERAL

        for warning in registry.warnings:
            self.formatter.warning(f"Skipped target descriptor: {warning}")

        sink = ConsoleSink(self.formatter, input_func=self.input_func)
        context = RunContext.from_config(
            self.config,
            policy=policy,
            runner=self.runner,
            session=self.session,
            sink=sink,
            verify_after_update=False if args.no_verify else None,
        )
        history = self.update_history if self.config.get_bool("history_enabled", False) else None

        lock: Optional[InstanceLock] = None
        try:
            if policy != ConfirmationPolicy.DRY_RUN:
                lock = InstanceLock(APP_SLUG, lock_dir=self.lock_dir)
                lock.acquire()

            with InterruptGuard() as guard:
                orchestrator = Orchestrator(context, history=history, interrupt=guard)
                orchestrator.preflight(targets, policy)
                if policy == ConfirmationPolicy.DRY_RUN:
                    self.formatter.info("Dry run: no update will be applied")
                report = orchestrator.run(targets, policy)

        except InstanceAlreadyRunningError as e:
            self.formatter.error(str(e))
            return ExitCode.GENERAL
        except InstanceLockError as e:
            self.formatter.error(f"Cannot acquire instance lock: {e}")
            return ExitCode.GENERAL
        except InsufficientPrivilegeError as e:
            self.formatter.error(str(e))
            return ExitCode.INSUFFICIENT_PRIVILEGE
        finally:
            if lock is not None:
                lock.release()

        report.warnings.extend(registry.warnings)
        code = exit_code_for(report)

        if args.json:
            data = report.to_dict()
            data['exit_code'] = int(code)
            self.formatter.output_json(data)
        elif not args.quiet:
            self.formatter.header(f"Results ({len(report.entries)} targets)")
            print(self.formatter.format_decision_table(report.entries))
            failures = self.formatter.format_failures(report)
            if failures:
                self.formatter.header("Problems")
                print(failures)
            print()
            print(self.formatter.format_summary(report))

        logger.debug(f"Run finished with exit code {int(code)}")
        return code

    def cmd_check(self, args: argparse.Namespace) -> int:
        """Handle 'check' command - report decisions without updating anything."""
        return self.cmd_run(args, policy=ConfirmationPolicy.DRY_RUN)

    def cmd_list(self, args: argparse.Namespace) -> int:
        """Handle 'list' command - show registered targets."""
        try:
            registry, targets = self._load_targets(args)
        except ConfigurationError as e:
            self.formatter.error(str(e))
            return ExitCode.GENERAL

        if args.json:
            self.formatter.output_json({
                'targets': [t.to_dict() for t in targets],
                'warnings': list(registry.warnings),
            })
            return ExitCode.SUCCESS

        for warning in registry.warnings:
            self.formatter.warning(f"Skipped target descriptor: {warning}")
        if not args.quiet:
            self.formatter.header(f"Targets ({len(targets)})")
            print(self.formatter.format_targets_table(targets))
        return ExitCode.SUCCESS

    def cmd_history(self, args: argparse.Namespace) -> int:
        """Handle 'history' command - display update history."""
        try:
            if args.clear:
                if not args.history_yes:
                    try:
                        response = self.input_func("Clear all update history? [y/N] ")
                    except EOFError:
                        response = ''
                    if response.strip().lower() not in ['y', 'yes']:
                        self.formatter.info("Clear cancelled")
                        return ExitCode.SUCCESS

                self.update_history.clear()
                self.formatter.success("Update history cleared")
                return ExitCode.SUCCESS

            if args.export:
                format_ = 'csv' if args.export.lower().endswith('.csv') else 'json'
                count = self.update_history.export(args.export, format_)
                self.formatter.success(f"Exported {count} entries to {args.export}")
                return ExitCode.SUCCESS

            entries = self.update_history.all()
            if args.limit:
                entries = entries[:args.limit]

            if args.json:
                self.formatter.output_json([entry.to_dict() for entry in entries])
            elif entries:
                self.formatter.header(f"Update History ({len(entries)} entries)")
                print(self.formatter.format_history_table([entry.to_dict() for entry in entries]))
            else:
                self.formatter.info("No update history recorded")
                if not self.config.get_bool("history_enabled", False):
                    self.formatter.info(f"Enable it with: {APP_SLUG} config set history_enabled true")

            return ExitCode.SUCCESS

        except (OSError, ValueError) as e:
            self.formatter.error(f"Failed to access history: {e}")
            return ExitCode.GENERAL

    def _display_value(self, key: str, value: object) -> object:
        if key in SECRET_KEYS and value:
            return '********'
        return value

    def cmd_config(self, args: argparse.Namespace) -> int:
        """Handle 'config' command - view/modify configuration."""
        try:
            if args.action == 'path':
                print(self.config.config_file)
                return ExitCode.SUCCESS

            elif args.action == 'init':
                if self.config.init_config():
                    self.formatter.success(f"Created {self.config.config_file}")
                else:
                    self.formatter.info(f"{self.config.config_file} already exists")
                return ExitCode.SUCCESS

            elif args.action in ('get', 'show'):
                if not args.key:
                    settings = {k: self._display_value(k, v) for k, v in self.config.get_all_settings().items()}
                    if args.json:
                        self.formatter.output_json(settings)
                    else:
                        self.formatter.header("Configuration")
                        for key, value in settings.items():
                            print(f"  {key}: {value}")
                    return ExitCode.SUCCESS

                if args.key not in CONFIG_SCHEMA:
                    self.formatter.error(f"Unknown config key: {args.key}")
                    return ExitCode.GENERAL
                value = self._display_value(args.key, self.config.get(args.key))
                if args.json:
                    self.formatter.output_json({args.key: value})
                else:
                    print(value)
                return ExitCode.SUCCESS

            elif args.action == 'set':
                if not args.key or args.value is None:
                    self.formatter.error("Both key and value are required for 'set'")
                    self.formatter.info("Available keys:")
                    for key in CONFIG_SCHEMA:
                        print(f"  • {key}")
                    return ExitCode.GENERAL

                value = parse_config_value(args.key, args.value)
                self.config.set(args.key, value)
                self.formatter.success(f"Set {args.key} = {self._display_value(args.key, value)}")
                return ExitCode.SUCCESS

            else:
                self.formatter.error(f"Unknown config action: {args.action}")
                return ExitCode.GENERAL

        except ConfigurationError as e:
            self.formatter.error(f"Config operation failed: {e}")
            return ExitCode.GENERAL


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog=APP_SLUG,
        description='Check installed software against upstream releases and apply updates',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--version', action='version', version=f'%(prog)s {APP_VERSION}')

    # Global options
    parser.add_argument(
        '--config',
        metavar='PATH',
        help='Alternative config file path'
    )
    parser.add_argument(
        '--targets-dir',
        metavar='DIR',
        action='append',
        help='Extra directory of target descriptors (repeatable)'
    )
    parser.add_argument(
        '--only',
        metavar='IDS',
        action='append',
        help='Only process these target ids (comma-separated, repeatable)'
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Apply every available update without asking'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Report decisions without running any update'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Output in JSON format'
    )
    parser.add_argument(
        '--no-color',
        action='store_true',
        help='Disable ANSI colors'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Minimal output (exit status only)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--no-verify',
        action='store_true',
        help='Do not re-check targets after updating them'
    )

    # Create sub-commands
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    subparsers.add_parser('run', help='Check all targets and apply updates (default)')
    subparsers.add_parser('check', help='Check all targets without updating (dry run)')
    subparsers.add_parser('list', help='List registered targets')

    # history command
    history_parser = subparsers.add_parser('history', help='Display update history')
    history_parser.add_argument(
        '--limit',
        type=int,
        metavar='N',
        help='Show at most N entries'
    )
    history_parser.add_argument(
        '--clear',
        action='store_true',
        help='Clear history'
    )
    history_parser.add_argument(
        '--export',
        metavar='FILE',
        help='Export history to file (json/csv)'
    )
    history_parser.add_argument(
        '--yes', '-y',
        dest='history_yes',
        action='store_true',
        help='Skip confirmation for clear'
    )

    # config command
    config_parser = subparsers.add_parser(
        'config',
        help='View/modify configuration',
        description='Manage configuration settings. Examples:\n'
        f'  {APP_SLUG} config show                      # Show all settings\n'
        f'  {APP_SLUG} config get probe_timeout         # Show specific setting\n'
        f'  {APP_SLUG} config set probe_timeout 20      # Set a value\n'
        f'  {APP_SLUG} config set disabled_targets a,b  # Set a list\n'
        f'  {APP_SLUG} config init                      # Write the default file\n'
        f'  {APP_SLUG} config path                      # Show config file location',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    config_parser.add_argument(
        'action',
        choices=['show', 'get', 'set', 'init', 'path'],
        help='Config action'
    )
    config_parser.add_argument(
        'key',
        nargs='?',
        help='Config key (e.g. probe_timeout, confirmation_policy)'
    )
    config_parser.add_argument(
        'value',
        nargs='?',
        help='Config value to set (e.g. 20, true, yes, a,b)'
    )

    return parser


def configure_logging(config: Config, args: argparse.Namespace) -> None:
    """Apply logging settings from the config file and the command line."""
    settings = config.get_all_settings()
    if args.debug:
        settings['debug_mode'] = True
        settings['console_level'] = logging.DEBUG
    elif args.quiet or args.json:
        settings['console_level'] = logging.ERROR
    else:
        settings['console_level'] = logging.WARNING
    set_global_config(settings)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Create and run CLI
    try:
        cli = SystemUpdaterCLI(args.config)
        configure_logging(cli.config, args)
        exit_code = cli.run(args)
        sys.exit(int(exit_code))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(int(ExitCode.GENERAL))
    except Exception as e:
        print(f"Fatal error: {str(e)}", file=sys.stderr)
        if args.debug:
            import traceback
            traceback.print_exc()
        sys.exit(int(ExitCode.GENERAL))


if __name__ == '__main__':
    main()
