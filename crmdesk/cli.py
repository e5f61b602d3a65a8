#!/usr/bin/env python
"""
Command-line interface for CRM Desk
"""

import argparse
import sys
from pathlib import Path

from crmdesk.version_info import __version__, __build_timestamp__, __build_type__


def print_version():
    """Print version information."""
    print(f"CRM Desk v{__version__}")
    print(f"Build: {__build_timestamp__}")
    print(f"Build Type: {__build_type__}")


def start_server(args):
    """Start the Flask server."""
    from crmdesk.app import create_app
    from crmdesk.config import load_config

    config = load_config()
    if args.debug:
        config['debug'] = True
    app = create_app(config)

    host = args.host
    port = args.port or 8000

    print(f"Starting CRM Desk v{__version__}")
    print(f"Server: http://{host}:{port}")
    print("Press Ctrl+C to stop")
    print()

    app.run(host=host, port=port, debug=args.debug)


def render_file(args):
    """Render a Markdown file to HTML on stdout."""
    from crmdesk.core.renderer import render_markdown, wrap_as_document

    path = Path(args.file)
    if not path.exists():
        print(f"File not found: {path}", file=sys.stderr)
        return 1
    text = path.read_text(encoding='utf-8')
    print(wrap_as_document(text) if args.document else render_markdown(text))
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        description=f'CRM Desk v{__version__}',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  crmdesk --version                  Show version information
  crmdesk start                      Start server on 0.0.0.0:8000
  crmdesk start --port 8080          Start server on port 8080
  crmdesk render report.md           Print the HTML fragment for a file
  crmdesk render report.md --document
        """
    )

    parser.add_argument(
        '--version', '-v',
        action='store_true',
        help='Show version information'
    )

    default_host = '0.0.0.0'
    parser.add_argument(
        '--host',
        type=str,
        default=default_host,
        help=f'Host to bind to (default: {default_host})'
    )
    parser.add_argument(
        '--port', '-p',
        type=int,
        default=8000,
        help='Port to bind to (default: 8000)'
    )
    parser.add_argument(
        '--debug', '-d',
        action='store_true',
        help='Run in debug mode'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')
    start_parser = subparsers.add_parser('start', help='Start the API server')
    # Repeated here so options may follow the command; top-level values stay when omitted
    start_parser.add_argument('--host', type=str, default=argparse.SUPPRESS, help='Host to bind to')
    start_parser.add_argument('--port', '-p', type=int, default=argparse.SUPPRESS, help='Port to bind to')
    start_parser.add_argument('--debug', '-d', action='store_true', default=argparse.SUPPRESS,
                              help='Run in debug mode')

    render_parser = subparsers.add_parser('render', help='Render a Markdown file to HTML')
    render_parser.add_argument('file', help='Markdown file to render')
    render_parser.add_argument(
        '--document',
        action='store_true',
        help='Wrap the output in the standalone preview document'
    )
    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print_version()
        return 0

    if args.command == 'render':
        return render_file(args)

    # Default behavior: Start Server
    try:
        start_server(args)
        return 0
    except KeyboardInterrupt:
        print("\nServer stopped.")
        return 0
    except Exception as e:
        if args.debug:
            import traceback
            traceback.print_exc()
        print(f"Error starting server: {e}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
