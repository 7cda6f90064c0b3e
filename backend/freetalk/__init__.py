"""FreeTalk realtime messaging backend."""
