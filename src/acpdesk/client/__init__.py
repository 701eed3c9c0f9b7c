"""Terminal front-end: CLI, REPL, slash commands and rich rendering."""
