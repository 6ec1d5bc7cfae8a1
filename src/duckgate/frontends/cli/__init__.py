"""CLI frontend for duckgate.

Commands:
    duckgate serve                Run the gateway server
    duckgate ratelimit status     Show the shared rate-limit window
    duckgate ratelimit monitor    Refresh the status periodically
    duckgate ratelimit clear      Delete the shared record
    duckgate ratelimit info       Show the configured limits

Example:
    $ duckgate serve --port 3264
    $ duckgate ratelimit status
"""

from duckgate.frontends.cli.main import main

__all__ = ["main"]
