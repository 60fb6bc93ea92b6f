"""Command line entry points for NyayaSutra storage maintenance."""
