"""Command-line interface for cartbridge."""

import argparse
import asyncio
import json
import logging
import sys

from . import __version__
from .config import Settings
from .credentials import CredentialStore, MemoryBackup, TokenClient
from .errors import CartbridgeError
from .gateway import UpstreamGateway
from .http_client import create_client
from .models import Product


def configure_logging(settings: Settings) -> None:
    """Configure the root logger from CARTBRIDGE_LOG_LEVEL."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _with_gateway(settings: Settings, action):
    """Run action(gateway) with an anonymous gateway and a fresh HTTP client."""
    http = create_client(settings)
    try:
        credentials = CredentialStore(TokenClient(settings, http), MemoryBackup())
        gateway = UpstreamGateway(settings, http, credentials)
        return await action(gateway)
    finally:
        await http.aclose()


def _print_products(products: list[Product], as_json: bool) -> None:
    if as_json:
        print(json.dumps([p.to_dict() for p in products], indent=2, ensure_ascii=False))
        return
    if not products:
        print("No products found.")
        return
    for p in products:
        label = f" [{p.variant_label}]" if p.variant_label else ""
        print(f"{p.id:>8}  {p.price:>10,.0f}  {p.name}{label}")


def cmd_serve(args: argparse.Namespace) -> int:
    """Start the API server."""
    try:
        import uvicorn

        settings = Settings.from_env()
        print("Starting cartbridge API server...")
        print(f"Upstream: {settings.product_api_base}")
        print(f"Session backend: {settings.session_backend}")
        print(f"API docs: http://{args.host}:{args.port}/docs")
        print()

        # When reload is enabled, uvicorn requires the app as an import string
        app_target = "cartbridge.api:app" if args.reload else None
        if app_target is None:
            from .api import app
            app_target = app

        uvicorn.run(
            app_target,
            host=args.host,
            port=args.port,
            reload=args.reload,
            log_level=settings.log_level.lower(),
            workers=1,  # The refresh single-flight guard is per process
        )
        return 0

    except CartbridgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_postcode(args: argparse.Namespace) -> int:
    """Look up a postal code."""
    try:
        settings = Settings.from_env()
        configure_logging(settings)
        result = asyncio.run(_with_gateway(settings, lambda g: g.lookup_postal(args.zip)))
    except CartbridgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(f"{result.zip}: {result.prefecture}{result.city}{result.town}")
    return 0


def cmd_products_list(args: argparse.Namespace) -> int:
    """List the catalog, one row per variant group."""
    try:
        settings = Settings.from_env()
        configure_logging(settings)
        products = asyncio.run(_with_gateway(settings, lambda g: g.list_products()))
    except CartbridgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_products(products, args.json)
    return 0


def cmd_products_search(args: argparse.Namespace) -> int:
    """Search the catalog by keyword."""
    try:
        settings = Settings.from_env()
        configure_logging(settings)
        products = asyncio.run(_with_gateway(settings, lambda g: g.search_products(args.query)))
    except CartbridgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    _print_products(products, args.json)
    return 0


def cmd_products_show(args: argparse.Namespace) -> int:
    """Show one product and its variants."""
    try:
        settings = Settings.from_env()
        configure_logging(settings)
        variants = asyncio.run(_with_gateway(settings, lambda g: g.get_variants(args.product_id)))
    except CartbridgeError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if not variants:
        print(f"Error: Product not found: {args.product_id}", file=sys.stderr)
        return 1
    _print_products(variants, args.json)
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="cartbridge",
        description="Storefront backend-for-frontend for an upstream commerce API",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument(
        "--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=8000, help="Port to bind to (default: 8000)"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload for development"
    )

    # postcode
    postcode_parser = subparsers.add_parser("postcode", help="Look up a postal code")
    postcode_parser.add_argument("zip", help="Postal code (digits; separators are ignored)")
    postcode_parser.add_argument("--json", action="store_true", help="Output as JSON")

    # products (subcommand group)
    products_parser = subparsers.add_parser("products", help="Browse the upstream catalog")
    products_subparsers = products_parser.add_subparsers(dest="products_command")

    products_list_parser = products_subparsers.add_parser("list", help="List all products")
    products_list_parser.add_argument("--json", action="store_true", help="Output as JSON")

    products_search_parser = products_subparsers.add_parser("search", help="Search products")
    products_search_parser.add_argument("query", help="Search keyword")
    products_search_parser.add_argument("--json", action="store_true", help="Output as JSON")

    products_show_parser = products_subparsers.add_parser("show", help="Show a product and its variants")
    products_show_parser.add_argument("product_id", help="Product ID")
    products_show_parser.add_argument("--json", action="store_true", help="Output as JSON")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    # Handle products subcommands
    if args.command == "products":
        if not getattr(args, "products_command", None):
            parser.parse_args(["products", "--help"])
            return 0
        products_commands = {
            "list": cmd_products_list,
            "search": cmd_products_search,
            "show": cmd_products_show,
        }
        return products_commands[args.products_command](args)

    commands = {
        "serve": cmd_serve,
        "postcode": cmd_postcode,
    }

    cmd_func = commands.get(args.command)
    if cmd_func:
        return cmd_func(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
