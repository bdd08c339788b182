#!/usr/bin/env python3
import argparse
import json

from uaproxy.config.config_manager import config_manager
from uaproxy.unlimited import ctl as unlimited


def print_status():
    """Display the runtime status of the proxy service"""
    settings = config_manager.settings
    running = unlimited.is_running()
    pid = unlimited.get_pid() if running else None

    status_text = "Running" if running else "Stopped"
    pid_text = f" (PID: {pid})" if pid else ""

    print("=== UnlimitedAI Proxy Status ===\n")
    print(f"  Port: {settings.port}")
    print(f"  Status: {status_text}{pid_text}")
    print(f"  Upstream: {settings.upstream_url}")
    print(f"  API key check: {'enabled' if settings.api_key else 'disabled'}")
    print(f"  Token rotation: {settings.rotation_limit or 'disabled'}")
    print(f"  Config file: {config_manager.config_file}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='UnlimitedAI Proxy - OpenAI-compatible gateway control tool',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  uap serve                     Run the proxy in the foreground
  uap start                     Start the proxy in the background
  uap stop                      Stop the background proxy
  uap status                    Display service status""",
        prog='uap'
    )
    subparsers = parser.add_subparsers(
        dest='command',
        title='Commands',
        description='Use uap <command> --help for detailed help',
        help='Command description'
    )

    serve = subparsers.add_parser(
        'serve',
        help='Run the proxy in the foreground',
        description='Serve the OpenAI-compatible API with uvicorn in this process'
    )
    serve.add_argument('--host', default=None, help='Host to bind to')
    serve.add_argument('--port', type=int, default=None, help='Port to listen on')

    subparsers.add_parser('start', help='Start the proxy in the background')
    subparsers.add_parser('stop', help='Stop the background proxy')
    subparsers.add_parser('restart', help='Restart the background proxy')
    subparsers.add_parser(
        'status',
        help='Show service status',
        description='Display runtime state, PID and effective settings'
    )
    subparsers.add_parser('models', help='Print the model listing served by /v1/models')
    return parser


def main(argv=None):
    """Main entry point that processes CLI arguments"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == 'serve':
        from uaproxy.unlimited.proxy import UnlimitedProxy
        UnlimitedProxy().run_app(host=args.host, port=args.port)
    elif args.command == 'start':
        unlimited.start()
    elif args.command == 'stop':
        unlimited.stop()
    elif args.command == 'restart':
        unlimited.restart()
    elif args.command == 'status':
        print_status()
    elif args.command == 'models':
        from uaproxy.unlimited.proxy import model_listing
        print(json.dumps(model_listing(config_manager.settings.default_model), indent=2))
    else:
        parser.print_help()


if __name__ == '__main__':
    main()
