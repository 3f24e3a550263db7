"""Integration test package.

These tests exercise several components together against a temporary
SQLite database: concurrent workspaces, the HTTP/websocket API and the
command line interface.
"""
