"""Serve the REST API and the push channel with uvicorn."""

from __future__ import annotations

import os

import uvicorn

from freetalk.settings import settings


def main() -> None:
	uvicorn.run(
		"freetalk.main:socket_app",
		host=os.getenv("HOST", "0.0.0.0"),
		port=int(os.getenv("PORT", "8000")),
		log_level=settings.obs_log_level.lower(),
		proxy_headers=True,
	)


if __name__ == "__main__":
	main()
