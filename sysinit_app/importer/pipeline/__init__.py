"""
Importer pipeline stages: dependency ordering, validation sessions, batch
execution, history ledger, and rollback.

Submodules are imported directly (``from sysinit_app.importer.pipeline.sessions
import ...``) so the registry can depend on ``ordering`` without pulling in
the stages that depend on the registry.
"""
