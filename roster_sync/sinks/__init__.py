"""
Sink adapters.

Each module here provides one SinkAdapterBase subclass; the orchestrator loads
it by module name from the `sink.module` configuration key.
"""
