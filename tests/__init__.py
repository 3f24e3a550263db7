"""Test suite for csvcollab.

Unit tests cover the row store, the locking protocol, status tracking,
presence and the sync engine; integration tests run multi-user scenarios
through workspaces, the web API and the CLI. To run the tests, execute
`pytest` from the project root.
"""
