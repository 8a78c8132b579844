#!/usr/bin/env python3
"""
actuate-exec - execute commands when alerts matching configured labels fire

Commands
- serve : Run the webhook service (default address 0.0.0.0:9942)
- check : Validate the rule file and list its handlers and rules
- match : Show which reactions a handler would run for a set of labels

Usage
  actuate-exec serve [-a 0.0.0.0:9942] [-c /etc/actuator/actuator.yml]
  actuate-exec check [-c actuator.yml]
  actuate-exec match [-c actuator.yml] [--path /] severity=critical site=west
"""

import argparse
import logging
import sys
from typing import List, Optional

from actuator import __version__
from actuator.actions import reaction_name
from actuator.config import Config, load_rule_file
from actuator.errors import ConfigError
from actuator.labels import LabelSet
from actuator.logging_utils import setup_json_logging

logger = logging.getLogger(__name__)


def _load(args):
    config = Config(address=getattr(args, 'address', None), config_file=args.config_file)
    handlers = load_rule_file(config.CONFIG_FILE, config=config)
    return config, handlers


def cmd_serve(args) -> int:
    from actuator.service import create_app, setup_signal_handlers

    config, handlers = _load(args)
    app = create_app(config, handlers)
    setup_signal_handlers(app)

    logger.info("=" * 70)
    logger.info(f"Actuator v{__version__} listening on {config.HOST}:{config.PORT}")
    logger.info("=" * 70)
    app.run(host=config.HOST, port=config.PORT, threaded=True)
    return 0


def cmd_check(args) -> int:
    _, handlers = _load(args)
    for handler in handlers:
        mode = 'prefix' if handler.plan.strict_prefix else 'subset'
        auth = 'token' if handler.token else 'no auth'
        print(f"{handler.path} ({mode} match, {auth})")
        for rule in handler.plan.rules:
            names = ", ".join(reaction_name(r) for r in rule.reactions)
            print(f"  {{{rule.labels}}} -> {names}")
    print(f"OK: {len(handlers)} handler(s)")
    return 0


def cmd_match(args) -> int:
    _, handlers = _load(args)
    handler = next((h for h in handlers if h.path == args.path), None)
    if handler is None:
        print(f"No handler with path {args.path}", file=sys.stderr)
        return 1

    try:
        labels = LabelSet.parse(args.labels)
    except ValueError as e:
        print(f"Invalid labels: {e}", file=sys.stderr)
        return 2

    groups = handler.plan.match(labels)
    if not groups:
        print(f"Nothing matched {{{labels}}}")
        return 0
    for i, group in enumerate(groups, 1):
        print(f"{i}. " + ", ".join(reaction_name(r) for r in group))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='actuate-exec',
        description='Execute commands in response to fired alerts',
    )
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        '-c', '--config.file',
        dest='config_file',
        default=None,
        help='actuator rule file location (env ACTUATOR_CONFIG_FILE, default /etc/actuator/actuator.yml)',
    )

    sub = parser.add_subparsers(dest='command')

    p_serve = sub.add_parser('serve', parents=[common], help='Run the webhook service')
    p_serve.add_argument(
        '-a', '--server.address',
        dest='address',
        default=None,
        help='ip:port to serve webhooks and metrics on (env ACTUATOR_ADDRESS, default 0.0.0.0:9942)',
    )

    sub.add_parser('check', parents=[common], help='Validate the rule file')

    p_match = sub.add_parser('match', parents=[common], help='Show reactions matching a label set')
    p_match.add_argument('--path', default='/', help='Handler path (default: /)')
    p_match.add_argument('labels', nargs='*', help='Alert labels as key=value')

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    # Bare flags (the old single-command form) mean "serve".
    if not argv or (argv[0].startswith('-') and argv[0] not in ('-h', '--help', '--version')):
        argv = ['serve'] + argv
    args = build_parser().parse_args(argv)

    level = 'INFO' if args.command == 'serve' else 'WARNING'
    setup_json_logging(service_name="actuator", version=__version__, level=level)

    try:
        if args.command == 'serve':
            return cmd_serve(args)
        if args.command == 'check':
            return cmd_check(args)
        return cmd_match(args)
    except ConfigError as e:
        logger.error(f"FATAL: Configuration error: {e}")
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
