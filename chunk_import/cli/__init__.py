"""Command line interface (`python -m chunk_import.cli`)."""
