"""Run the relay with uvicorn: ``python -m sora_relay``.

Bind address comes from ``RELAY_HOST`` / ``RELAY_PORT``; everything else is
read by :class:`sora_relay.core.config.Valves`.
"""

import os

import uvicorn


def main() -> None:
    uvicorn.run(
        "sora_relay.api.app:create_app",
        factory=True,
        host=os.getenv("RELAY_HOST", "0.0.0.0"),
        port=int(os.getenv("RELAY_PORT", "8787")),
        log_level=(os.getenv("GLOBAL_LOG_LEVEL") or "info").lower(),
    )


if __name__ == "__main__":
    main()
