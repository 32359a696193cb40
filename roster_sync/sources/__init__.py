"""
Source adapters.

Each module here provides one SourceAdapterBase subclass; the orchestrator
loads it by module name from the `source.module` configuration key.
"""
