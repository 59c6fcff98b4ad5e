"""
Command line entry point for org-federation.

Loads the configuration, authenticates one target and either prints its
department tree or resolves an external identity to a department or user.
"""

import sys
import json
import logging
import argparse
from typing import Any, Dict, List, Optional

from org_federation.config import load_config, get_target_config, ConfigurationError
from org_federation.directory import authenticate
from org_federation.identity import FormatError, parse_string
from org_federation.logging_setup import setup_logging, security_logger
from org_federation.target import AuthError, NotFoundError, AmbiguousLookupError
from org_federation.walker import build_tree

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_LOOKUP_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_ERROR = 3
EXIT_UNEXPECTED = 4


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Directory federation tool')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--target', '-t', help='Target name (defaults to the first configured target)')

    action = parser.add_mutually_exclusive_group()
    action.add_argument('--lookup-user', metavar='EXT_ID',
                        help='Resolve an external identity to a user')
    action.add_argument('--lookup-department', metavar='EXT_ID',
                        help='Resolve an external identity to a department')
    action.add_argument('--health-check', action='store_true',
                        help='Authenticate and resolve the root department only')

    parser.add_argument('--users', action='store_true', help='Include users in the tree')
    parser.add_argument('--identities', action='store_true', help='Include external identities in the output')
    parser.add_argument('--max-depth', type=int, help='Limit tree depth')
    return parser


def run(argv: Optional[List[str]] = None, out=None) -> int:
    """
    Run the CLI.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    args = build_parser().parse_args(argv)
    out = out or sys.stdout

    try:
        config = load_config(args.config)
        setup_logging(config.get('logging', {}))
        security_logger.log_configuration_access(args.config or 'config.yaml')
        target_config = get_target_config(config, args.target)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    try:
        with authenticate(target_config) as target:
            result = _perform(target, args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except AuthError as e:
        logger.error(f"Authentication error: {e}")
        print(f"Authentication error: {e}", file=sys.stderr)
        return EXIT_AUTH_ERROR
    except (NotFoundError, AmbiguousLookupError, FormatError) as e:
        logger.warning(f"Lookup failed: {e}")
        print(str(e), file=sys.stderr)
        return EXIT_LOOKUP_FAILED
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        print(f"Unexpected error: {e}", file=sys.stderr)
        return EXIT_UNEXPECTED

    print(json.dumps(result, indent=2), file=out)
    return EXIT_OK


def _perform(target, args) -> Dict[str, Any]:
    if args.lookup_user:
        user = target.lookup_user_by_external_identity(parse_string(args.lookup_user))
        result = {
            'id': user.user_id(),
            'name': user.user_name(),
            'email': user.user_email(),
            'external_identity': str(user.external_identity()),
        }
        if args.identities:
            result['external_identities'] = [str(i) for i in user.get_external_identities()]
        return result

    if args.lookup_department:
        department = target.lookup_department_by_external_identity(parse_string(args.lookup_department))
        return {
            'id': department.department_id(),
            'name': department.name(),
            'external_identity': str(department.external_identity()),
            'external_identities': [str(i) for i in department.get_external_identities()],
        }

    root = target.root_department()
    if args.health_check:
        return {
            'status': 'healthy',
            'target': target.name,
            'platform': target.get_platform(),
            'slug': target.get_target_slug(),
            'root_department': {'id': root.department_id(), 'name': root.name()},
        }

    return build_tree(root, include_users=args.users, include_identities=args.identities,
                      max_depth=args.max_depth)


def main():
    """Main entry point for the application."""
    sys.exit(run())


if __name__ == "__main__":
    main()
