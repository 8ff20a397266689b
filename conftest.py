# Makes the repository root importable (core, ingest, server) when running pytest from a checkout.
