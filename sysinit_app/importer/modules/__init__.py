"""
Built-in import modules.

Each submodule exposes ``register(registry)``; list the dotted paths in
``IMPORTER_MODULES`` to enable them.
"""
