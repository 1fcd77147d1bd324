"""
taskbridge: persistence and identity core of a team task manager.

Components:
- gateway.py: PersistenceGateway, the only entry point to storage
- storage/: embedded (JSON files) and remote (SQL over HTTP) backends
- identity/: token strategies, account linking, resolver, sessions
- activity.py: bounded audit trail
"""
