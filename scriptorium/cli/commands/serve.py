"""HTTP server CLI command."""

import uvicorn

from scriptorium.api.app import create_app


def cmd_serve(args):
    """Serve the HTTP API."""
    app = create_app(args.settings)
    print(f"Serving on http://{args.host}:{args.port}")
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.settings.log_level.lower())
    return 0


def setup_serve_commands(subparsers):
    """Setup serve subcommand."""
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port")
    serve_parser.set_defaults(func=cmd_serve)
