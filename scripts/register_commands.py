"""
Register the bot's slash commands globally with Discord.
Run once after deploying, and again whenever a command definition changes:

    python -m scripts.register_commands

Also prints the interactions endpoint URL to paste into the developer portal.
"""
import asyncio

from discord_verify.config import get_settings
from discord_verify.exceptions import DiscordAPIError
from discord_verify.services.discord_api import DiscordClient
from discord_verify.webhooks.commands import COMMANDS


async def register_commands():
    settings = get_settings()
    client = DiscordClient(
        token=settings.DISCORD_TOKEN,
        application_id=settings.DISCORD_APPLICATION_ID,
        base_url=settings.DISCORD_API_BASE,
        timeout=settings.HTTP_TIMEOUT_SECONDS,
    )

    print(f"Registering {len(COMMANDS)} commands for application {settings.DISCORD_APPLICATION_ID}\n")
    try:
        registered = await client.bulk_overwrite_global_commands(COMMANDS)
        for command in registered:
            print(f"  /{command['name']}  (id {command['id']})")
        print()
        print(f"Interactions endpoint URL: {settings.app_url}/interactions")
    except DiscordAPIError as e:
        print(f"ERROR: {e.message} {e.details}")
    finally:
        await client.close()


if __name__ == "__main__":
    asyncio.run(register_commands())
