"""
Test Suite for the Project Engine

One module per component: models, progress, repository, cascade,
reconciliation loop, external hooks, workflow, adapters, HTTP router,
configuration and persistence.
"""
