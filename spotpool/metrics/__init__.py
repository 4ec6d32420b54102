"""Queue metric sampling and sliding sample windows."""
