import argparse
import asyncio
import logging

from mcp.server.stdio import stdio_server

from mission_control.db.database import close_db
from mission_control.mcp_server import server


async def main():
    parser = argparse.ArgumentParser(description="Mission Control MCP stdio mode")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (overrides MISSIONCONTROL_DB)")
    args = parser.parse_args()

    if args.db:
        from mission_control.db import database
        database.DB_PATH = args.db

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )
    finally:
        await close_db()


if __name__ == "__main__":
    # Logging to stdout would corrupt the MCP JSON-RPC stream
    logging.getLogger().setLevel(logging.CRITICAL)
    asyncio.run(main())
