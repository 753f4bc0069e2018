"""
Feature modules live under this package.

Each module owns its models, service functions and blueprints, and reuses the
platform pieces (identity, policy table, audit, storage, mailer, DB session).
"""
