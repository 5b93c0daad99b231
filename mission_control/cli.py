import argparse

import uvicorn

from mission_control.config import HOST, PORT


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Mission Control HTTP/SSE server")
    parser.add_argument("--host", default=HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=PORT, help="Bind port")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    args = parser.parse_args()

    uvicorn.run(
        "mission_control.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        # live SSE streams never finish on their own
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
