"""Web package for csvcollab.

This package contains the FastAPI application exposing the row-locking
protocol over HTTP, plus a websocket relaying the realtime change feed.

To start the web server from the CLI use:
    csvcollab serve --port 8000
"""
