"""Allow `python -m memory_engineering` to start the MCP server."""

from .server import main

if __name__ == "__main__":
    main()
