#!/usr/bin/env python3

"""Example script running the pyhomeconnect engine and printing notifications."""

import asyncio
import json  # To pretty-print notification payloads
import logging
import os  # Import os module to access environment variables

from pyhomeconnect import Engine, EngineConfig, Topic

# --- Configuration ---
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)

# Read credentials from environment variables, fallback to placeholders
CLIENT_ID = os.getenv("HOMECONNECT_CLIENT_ID", "YOUR_CLIENT_ID")
CLIENT_SECRET = os.getenv("HOMECONNECT_CLIENT_SECRET")
SIMULATED = os.getenv("HOMECONNECT_SIMULATOR", "0") == "1"
TOKEN_FILE = os.getenv("HOMECONNECT_TOKEN_FILE", "refresh_token.json")

# How often to ask for active programs, in seconds
PROGRAM_POLL_INTERVAL = 60


def print_notification(topic: Topic, payload: dict) -> None:
    """Print every notification delivered to the example session."""
    if topic is Topic.AUTH_INFO:
        logging.info(
            "Open %s and enter code %s",
            payload.get("verification_uri"),
            payload.get("user_code"),
        )
        logging.info("Or open directly: %s", payload.get("verification_uri_complete"))
        return
    if topic is Topic.DEVICES:
        for device in payload.get("devices", []):
            logging.info(
                "  %s (%s): power=%s door=%s state=%s remaining=%s progress=%s",
                device.get("name"),
                device.get("ha_id"),
                device.get("power_state"),
                device.get("door_state"),
                device.get("operation_state"),
                device.get("remaining_program_seconds"),
                device.get("estimated_progress"),
            )
        return
    logging.info("%s: %s", topic.value, json.dumps(payload, indent=2, default=str))


# --- Main Async Function ---
async def main():
    """Run the engine for one session until interrupted."""
    if CLIENT_ID == "YOUR_CLIENT_ID":
        logging.error(
            "Please set the HOMECONNECT_CLIENT_ID environment variable."
        )
        return

    config = EngineConfig(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        simulated=SIMULATED,
        token_file=TOKEN_FILE,
        log_level="info",
    )
    engine = Engine(config, print_notification)
    try:
        await engine.register_session("example")
        while True:
            await asyncio.sleep(PROGRAM_POLL_INTERVAL)
            await engine.request_active_programs("example")
    except asyncio.CancelledError:
        logging.info("Stopping...")
    finally:
        logging.info("Closing engine...")
        await engine.async_close()
        logging.info("Example script finished.")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.info("Interrupted by user.")
