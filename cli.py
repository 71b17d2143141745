import argparse
import asyncio
import sys
from datetime import datetime, timezone

from pydantic import ValidationError

from config import create_logger, load_config
from errors import JMAPError, format_startup_error
from jmap_client import JMAPClient
from oidc_flow import get_oidc_options_from_config, perform_oidc_flow


async def run_auth() -> int:
    """Re-run the OIDC flow, e.g. after the refresh token was revoked."""
    print("\n=== MCP Twake Mail - Re-authenticate ===\n")
    try:
        config = load_config()
    except ValidationError as e:
        print(format_startup_error(e), file=sys.stderr)
        print("\nMake sure the environment variables are set.", file=sys.stderr)
        return 1

    options = get_oidc_options_from_config(config)
    if options is None:
        print("OIDC is not configured.", file=sys.stderr)
        print("\nThis command only works when JMAP_AUTH_METHOD=oidc.", file=sys.stderr)
        print(
            "For basic or bearer auth, credentials are read from environment variables.",
            file=sys.stderr,
        )
        return 1

    create_logger(config.log_level)
    print(f"Issuer: {options.issuer_url}")
    print(f"Client ID: {options.client_id}")
    print(f"Scopes: {options.scope}")
    print("\nOpening browser for authentication...\n")

    try:
        tokens = await perform_oidc_flow(options)
    except JMAPError as e:
        print(f"\nAuthentication failed: {e.message}\nFix: {e.fix}", file=sys.stderr)
        return 1

    expires = (
        datetime.fromtimestamp(tokens.expires_at, tz=timezone.utc).isoformat()
        if tokens.expires_at
        else "unknown"
    )
    print("\nAuthentication successful!")
    print(f"Access token stored (expires: {expires})")
    if tokens.refresh_token:
        print("Refresh token stored for automatic renewal.")
    return 0


async def run_check() -> int:
    """Verify configuration and test the JMAP connection."""
    print("\n=== MCP Twake Mail - Configuration Check ===\n")
    try:
        config = load_config()
    except ValidationError as e:
        print(f"[FAIL] Configuration\n{format_startup_error(e)}")
        return 1
    print(f"[OK] JMAP URL: {config.session_url}")
    print(f"[OK] Auth Method: {config.auth_method}")

    client = JMAPClient(config, create_logger("error"))
    try:
        session = await client.fetch_session()
    except JMAPError as e:
        print(f"[FAIL] Connection: {e.message}\n  Fix: {e.fix}")
        return 1
    print(f"[OK] Connection: Connected (Account: {session.account_id})")
    print("\nAll checks passed! mcp-twake-mail is ready to use.\n")
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="mcp-twake-mail", description="JMAP mail tools for MCP assistants"
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the MCP server on stdio (default)")
    sub.add_parser("auth", help="Authenticate with the OIDC provider")
    sub.add_parser("check", help="Verify configuration and connectivity")
    args = parser.parse_args(argv)

    if args.command == "auth":
        sys.exit(asyncio.run(run_auth()))
    if args.command == "check":
        sys.exit(asyncio.run(run_check()))

    from server import start_server

    asyncio.run(start_server())


if __name__ == "__main__":
    main()
