#!/usr/bin/env python3
"""beatflow CLI entrypoint."""

import argparse
import logging
import os
import sys
from pathlib import Path

from beatflow.backends.router import create_backend
from beatflow.lib.config import BeatflowConfig, ConfigError, load_config
from beatflow.commands import capabilities as cmd_capabilities_module
from beatflow.commands import close as cmd_close_module
from beatflow.commands import verify as cmd_verify_module
from beatflow.commands import workflow as cmd_workflow_module
from beatflow.lib.validate import ValidationError
from beatflow.workflow import model


def get_config(args) -> BeatflowConfig:
    """Load config from --config or ./beatflow.env. Exits 2 on bad config."""
    try:
        return load_config(Path(args.config) if args.config else None)
    except ConfigError as e:
        print(f"ERROR: {e}")
        sys.exit(2)


def get_backend_for(args):
    config = get_config(args)
    return create_backend(config.backend, config)


def get_closed_states(args) -> frozenset[str]:
    """Closed state names across built-in and configured workflows. Exits 2 on a bad workflows file."""
    try:
        catalog = cmd_workflow_module.load_catalog(get_config(args))
    except (ValidationError, FileNotFoundError) as e:
        print(f"ERROR: {e}")
        sys.exit(2)
    return model.closed_states(catalog.values())


def cmd_step(args):
    return cmd_workflow_module.cmd_step(args, get_config(args))


def cmd_workflows(args):
    return cmd_workflow_module.cmd_workflows(args, get_config(args))


def cmd_capabilities(args):
    return cmd_capabilities_module.cmd_capabilities(args, get_backend_for(args))


def cmd_descendants(args):
    return cmd_close_module.cmd_descendants(args, get_backend_for(args), get_closed_states(args))


def cmd_close(args):
    return cmd_close_module.cmd_close(args, get_backend_for(args), get_closed_states(args))


def cmd_regroom(args):
    return cmd_close_module.cmd_regroom(args, get_backend_for(args), get_closed_states(args))


def cmd_verify_prompt(args):
    return cmd_verify_module.cmd_verify_prompt(args, get_backend_for(args))


def cmd_verdict(args):
    return cmd_verify_module.cmd_verdict(args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='beatflow', description='Task lifecycle and verification CLI')
    parser.add_argument('--config', '-c', help='Config file (default: ./beatflow.env)')
    parser.add_argument('--repo', '-r', help='Repository path (default: current directory)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # beatflow step
    p_step = subparsers.add_parser('step', help='Resolve a workflow state name')
    p_step.add_argument('state', help='State name, e.g. ready_for_implementation')
    p_step.add_argument('--workflow', '-w', help='Workflow id (default: autopilot)')
    p_step.add_argument('--to', metavar='STATE', help='Check whether the workflow allows moving to STATE')
    p_step.set_defaults(func=cmd_step)

    # beatflow workflows
    p_workflows = subparsers.add_parser('workflows', help='List workflow descriptors')
    p_workflows.set_defaults(func=cmd_workflows)

    # beatflow capabilities
    p_caps = subparsers.add_parser('capabilities', help='Show backend and capabilities for the repo')
    p_caps.set_defaults(func=cmd_capabilities)

    # beatflow descendants
    p_desc = subparsers.add_parser('descendants', help='List open descendants in close order')
    p_desc.add_argument('id', help='Task ID')
    p_desc.set_defaults(func=cmd_descendants)

    # beatflow close
    p_close = subparsers.add_parser('close', help='Close a task')
    p_close.add_argument('id', help='Task ID')
    p_close.add_argument('--cascade', action='store_true', help='Also close all open descendants')
    p_close.add_argument('--reason', help='Close reason')
    p_close.add_argument('--yes', '-y', action='store_true', help='Confirm cascade close')
    p_close.set_defaults(func=cmd_close)

    # beatflow regroom
    p_regroom = subparsers.add_parser('regroom', help='Auto-close ancestors whose children are all closed')
    p_regroom.add_argument('id', help='Task ID that just changed')
    p_regroom.set_defaults(func=cmd_regroom)

    # beatflow verify-prompt
    p_prompt = subparsers.add_parser('verify-prompt', help='Print the verifier prompt for a task')
    p_prompt.add_argument('id', help='Task ID')
    p_prompt.add_argument('--commit', help='Commit under review (default: commit: label)')
    p_prompt.set_defaults(func=cmd_verify_prompt)

    # beatflow verdict
    p_verdict = subparsers.add_parser('verdict', help='Parse verifier output from stdin')
    p_verdict.set_defaults(func=cmd_verdict)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    if not args.repo:
        args.repo = os.getcwd()

    return args.func(args) or 0


if __name__ == '__main__':
    sys.exit(main())
