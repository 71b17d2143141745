import sys

from fastmcp import FastMCP

import tools
from config import create_logger, load_config
from errors import format_startup_error
from jmap_client import JMAPClient
from tools import get_email, get_thread, list_emails, list_mailboxes, search_emails

SERVER_NAME = "mcp-twake-mail"
SERVER_VERSION = "0.1.0"

mcp = FastMCP(
    name=SERVER_NAME,
    instructions=(
        "You have access to a mail account over JMAP. Start with list_mailboxes "
        "to see available folders, then use list_emails or search_emails to find "
        "specific messages. Use get_email for full content and get_thread for "
        "conversation context."
    ),
)

TOOL_ANNOTATIONS = {
    "readOnlyHint": True,
    "destructiveHint": False,
    "idempotentHint": True,
    "openWorldHint": False,
}

mcp.tool(annotations=TOOL_ANNOTATIONS)(list_mailboxes)
mcp.tool(annotations=TOOL_ANNOTATIONS)(list_emails)
mcp.tool(annotations=TOOL_ANNOTATIONS)(get_email)
mcp.tool(annotations=TOOL_ANNOTATIONS)(search_emails)
mcp.tool(annotations=TOOL_ANNOTATIONS)(get_thread)


async def start_server() -> None:
    """Validate the JMAP connection, then serve MCP over stdio.

    stdout belongs to the MCP protocol: startup failures go to stderr and
    the process exits with status 1.
    """
    session_url = None
    logger = None
    try:
        config = load_config()
        session_url = config.session_url
        logger = create_logger(config.log_level)
        logger.info("Starting %s server %s", SERVER_NAME, SERVER_VERSION)

        client = JMAPClient(config, logger)
        session = await client.fetch_session()
        logger.info("JMAP connection validated (account %s)", session.account_id)
        tools.jmap = client
    except Exception as e:
        if logger is not None:
            logger.critical("Startup failed: %s", e)
        sys.stderr.write(f"\n{format_startup_error(e, session_url)}\n")
        sys.exit(1)

    logger.info("MCP server running on stdio")
    await mcp.run_async(transport="stdio")


if __name__ == "__main__":
    import asyncio

    asyncio.run(start_server())
