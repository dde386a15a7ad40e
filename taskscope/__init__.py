"""taskscope - timezone-aware task filtering over a resilient store."""
