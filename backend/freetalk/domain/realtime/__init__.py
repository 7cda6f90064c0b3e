"""Push channel: connection registry, Socket.IO gateway and mobile push fallback."""
