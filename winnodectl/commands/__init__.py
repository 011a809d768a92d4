"""Command-line commands for winnodectl."""
