import asyncio
import logging
from logging.handlers import RotatingFileHandler

import discord
import uvicorn
from discord import app_commands
from discord.ext import commands

from .api import create_app
from .config import Settings
from .database import Database
from .delivery import Delivery, record_activity
from .errors import CadenceError, NotFoundError, UpstreamDeliveryError, ValidationError
from .scheduler import Scheduler, SystemClock, describe_days, parse_days
from .service import ScheduleService
from .timestamps import parse_timestamp

logger = logging.getLogger(__name__)

DISCORD_MESSAGE_LIMIT = 2000
HISTORY_SCAN_LIMIT = 100


class DiscordSender:
    """Delivery sender that posts to a Discord channel or thread by id."""

    def __init__(self, bot: discord.Client, timeout: float):
        self.bot = bot
        self.timeout = timeout

    async def _resolve(self, channel_id: int):
        ch = self.bot.get_channel(channel_id)
        if ch is None:
            try:
                ch = await self.bot.fetch_channel(channel_id)
            except discord.NotFound:
                raise UpstreamDeliveryError(f"Channel {channel_id} not found") from None
            except discord.Forbidden:
                raise UpstreamDeliveryError(f"No access to channel {channel_id}") from None
        if not hasattr(ch, 'send'):
            raise UpstreamDeliveryError(f"Channel {channel_id} is not a text channel")
        return ch

    async def __call__(self, channel_id, content: str) -> str:
        try:
            target = int(channel_id)
        except (TypeError, ValueError):
            raise UpstreamDeliveryError(f"Invalid channel id {channel_id!r}") from None
        try:
            ch = await asyncio.wait_for(self._resolve(target), timeout=self.timeout)
            message = await asyncio.wait_for(ch.send(content), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise UpstreamDeliveryError(f"Timed out sending to channel {channel_id}") from None
        except discord.HTTPException as e:
            raise UpstreamDeliveryError(f"Discord rejected the message: {e}") from e
        return str(message.id)


class CadenceBot(commands.Bot):
    def __init__(self, settings: Settings, db: Database | None = None, clock=None):
        intents = discord.Intents.default()
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.settings = settings
        self.db = db or Database(settings.db_path)
        self.scheduler = Scheduler(clock or SystemClock(settings.tzinfo()))
        self.delivery = Delivery(self.db, DiscordSender(self, settings.send_timeout))
        self.service = ScheduleService(self.db, self.scheduler, self.delivery)
        self.http_server: uvicorn.Server | None = None
        self._http_task: asyncio.Task | None = None
        self.tree.error(self.on_app_command_error)

    async def setup_hook(self) -> None:
        # The store must open before anything is scheduled or served; failure here aborts startup
        await self.db.connect()
        loaded = await self.service.start()
        logger.info("Loaded %d schedules from the database", loaded)

        app = create_app(self.db, self.service, self.settings)
        config = uvicorn.Config(
            app, host=self.settings.http_host, port=self.settings.http_port, log_config=None, lifespan='off'
        )
        self.http_server = uvicorn.Server(config)
        self._http_task = asyncio.create_task(self.http_server.serve(), name='bot-http-api')
        if not self.settings.logs_token:
            logger.warning("LOGS_TOKEN is not set; every protected HTTP endpoint will answer 401")

        for command in SLASH_COMMANDS:
            self.tree.add_command(command)
        if self.settings.guild_id:
            guild = discord.Object(id=self.settings.guild_id)
            self.tree.copy_global_to(guild=guild)
            synced = await self.tree.sync(guild=guild)
            logger.info("Synced %d slash commands to guild %s", len(synced), self.settings.guild_id)
        else:
            synced = await self.tree.sync()
            logger.info("Synced %d slash commands globally", len(synced))

    async def on_ready(self):
        logger.info("%s is ready to go (%d guilds)", self.user, len(self.guilds))
        await record_activity(
            self.db, 'bot_started', source='discord_bot', action='startup',
            metadata={'guilds': len(self.guilds), 'schedules': len(self.scheduler)},
        )

    async def close(self) -> None:
        if self.http_server is not None:
            self.http_server.should_exit = True
        if self._http_task is not None:
            try:
                await self._http_task
            except Exception as e:
                logger.exception("HTTP API stopped with an error: %s", e)
        await self.scheduler.close()
        await super().close()

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        original = getattr(error, 'original', error)
        name = interaction.command.name if interaction.command else 'unknown'
        logger.error("Error handling /%s: %s", name, original, exc_info=original)
        await record_activity(
            self.db, 'command_error', source='discord_slash', channel_id=_channel_id(interaction),
            user_id=str(interaction.user.id), status='failed', error=str(original), action=name,
        )
        text = 'An error occurred while processing your command.'
        try:
            if interaction.response.is_done():
                await interaction.followup.send(text, ephemeral=True)
            else:
                await interaction.response.send_message(text, ephemeral=True)
        except discord.HTTPException as e:
            logger.error("Could not send error response for /%s: %s", name, e)


def _channel_id(interaction: discord.Interaction) -> str | None:
    return str(interaction.channel_id) if interaction.channel_id else None


async def _reply(interaction: discord.Interaction, text: str) -> None:
    if len(text) > DISCORD_MESSAGE_LIMIT:
        text = text[:DISCORD_MESSAGE_LIMIT - 4] + '\n...'
    await interaction.followup.send(text, ephemeral=True)


async def _record_failure(interaction: discord.Interaction, subcategory: str, action: str, error: Exception):
    bot: CadenceBot = interaction.client
    logger.error("/%s failed: %s", action, error, exc_info=error)
    await record_activity(
        bot.db, subcategory, source='discord_slash', channel_id=_channel_id(interaction),
        user_id=str(interaction.user.id), status='failed', error=str(error), action=action,
    )


@app_commands.command(name='add-task', description='Add a recurring task')
@app_commands.describe(
    content='What needs to be done',
    time='Time in HH:MM format (24-hour)',
    days='Days of week, comma-separated (0=Sunday, 1=Monday ... 6=Saturday); empty for daily',
)
async def add_task(interaction: discord.Interaction, content: str, time: str, days: str | None = None):
    bot: CadenceBot = interaction.client
    await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        row = await bot.service.add_task(
            content, _channel_id(interaction), interaction.user.id, time, days, source='discord_slash'
        )
    except ValidationError as e:
        return await _reply(interaction, f"❌ {e.message}")
    except CadenceError as e:
        await _record_failure(interaction, 'task_add_failed', 'add_task', e)
        return await _reply(interaction, '❌ Failed to add task. Please try again.')
    schedule = describe_days(parse_days(row['days']))
    await _reply(interaction, f"✅ Task added! I'll remind you \"{row['content']}\" at {row['time']} {schedule}.")


@app_commands.command(name='add-reminder', description='Add a daily reminder')
@app_commands.describe(content='What to be reminded about', time='Time in HH:MM format (24-hour)')
async def add_reminder(interaction: discord.Interaction, content: str, time: str):
    bot: CadenceBot = interaction.client
    await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        row = await bot.service.add_reminder(
            content, _channel_id(interaction), interaction.user.id, time, source='discord_slash'
        )
    except ValidationError as e:
        return await _reply(interaction, f"❌ {e.message}")
    except CadenceError as e:
        await _record_failure(interaction, 'reminder_add_failed', 'add_reminder', e)
        return await _reply(interaction, '❌ Failed to add reminder. Please try again.')
    await _reply(interaction, f"✅ Daily reminder added! I'll remind you \"{row['content']}\" at {row['time']} every day.")


def _created_date(row: dict) -> str:
    try:
        return parse_timestamp(row['created_at']).strftime('%Y-%m-%d')
    except (TypeError, ValueError):
        return 'unknown'


def format_item_list(kind: str, rows: list[dict]) -> str:
    if not rows:
        return f"📭 You have no active {kind}s."
    lines = [f"📋 **Your Active {kind.capitalize()}s:**", '']
    for row in rows:
        when = describe_days(parse_days(row.get('days'))) if kind == 'task' else 'daily'
        lines.append(f"**ID {row['id']}:** {row['content']}")
        lines.append(f"⏰ Time: {row['time']} {when}")
        lines.append(f"📅 Created: {_created_date(row)}")
        lines.append('')
    lines.append(f"Use `/delete-{kind} id:<ID>` to delete a {kind}.")
    return '\n'.join(lines)


async def _list_items(interaction: discord.Interaction, kind: str):
    bot: CadenceBot = interaction.client
    await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        rows = await bot.service.list_for_user(kind, interaction.user.id)
    except CadenceError as e:
        await _record_failure(interaction, f"list_{kind}s_failed", f"list_{kind}s", e)
        return await _reply(interaction, f"❌ Failed to retrieve {kind}s.")
    await record_activity(
        bot.db, f"{kind}s_listed", source='discord_slash', channel_id=_channel_id(interaction),
        user_id=str(interaction.user.id), action=f"list_{kind}s", metadata={'count': len(rows)},
    )
    await _reply(interaction, format_item_list(kind, rows))


@app_commands.command(name='list-reminders', description='List your active reminders')
async def list_reminders(interaction: discord.Interaction):
    await _list_items(interaction, 'reminder')


@app_commands.command(name='list-tasks', description='List your active tasks')
async def list_tasks(interaction: discord.Interaction):
    await _list_items(interaction, 'task')


async def _delete_item(interaction: discord.Interaction, kind: str, item_id: int, keep_history: bool):
    bot: CadenceBot = interaction.client
    await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        row = await bot.service.remove(
            kind, item_id, interaction.user.id, soft=keep_history, source='discord_slash',
            channel_id=_channel_id(interaction),
        )
    except NotFoundError:
        return await _reply(interaction, f"❌ {kind.capitalize()} not found or you don't have permission to delete it.")
    except CadenceError as e:
        await _record_failure(interaction, f"{kind}_delete_failed", f"delete_{kind}", e)
        return await _reply(interaction, f"❌ Failed to delete {kind}.")
    verb = 'deactivated' if keep_history else 'deleted'
    await _reply(interaction, f"✅ {kind.capitalize()} \"{row['content']}\" (ID: {item_id}) has been {verb}.")


@app_commands.command(name='delete-reminder', description='Delete one of your reminders')
@app_commands.rename(item_id='id')
@app_commands.describe(item_id='Reminder ID (see /list-reminders)', keep_history='Deactivate instead of deleting')
async def delete_reminder(interaction: discord.Interaction, item_id: int, keep_history: bool = False):
    await _delete_item(interaction, 'reminder', item_id, keep_history)


@app_commands.command(name='delete-task', description='Delete one of your tasks')
@app_commands.rename(item_id='id')
@app_commands.describe(item_id='Task ID (see /list-tasks)', keep_history='Deactivate instead of deleting')
async def delete_task(interaction: discord.Interaction, item_id: int, keep_history: bool = False):
    await _delete_item(interaction, 'task', item_id, keep_history)


@app_commands.command(name='complete-task', description='Mark a task as done for today')
@app_commands.rename(item_id='id')
@app_commands.describe(item_id='Task ID (see /list-tasks)')
async def complete_task(interaction: discord.Interaction, item_id: int):
    bot: CadenceBot = interaction.client
    await interaction.response.defer(ephemeral=True, thinking=True)
    try:
        await bot.service.complete('task', item_id, interaction.user.id, channel_id=_channel_id(interaction))
    except NotFoundError:
        return await _reply(interaction, "❌ Task not found or you don't have permission to complete it.")
    except CadenceError as e:
        await _record_failure(interaction, 'task_complete_failed', 'complete_task', e)
        return await _reply(interaction, '❌ Failed to complete task.')
    await _reply(interaction, f"✅ Task {item_id} marked as complete.")


@app_commands.command(name='delete-messages', description="Delete the bot's recent messages in this channel")
@app_commands.describe(count='Number of messages to delete (1-50)')
async def delete_messages(interaction: discord.Interaction, count: app_commands.Range[int, 1, 50] = 10):
    bot: CadenceBot = interaction.client
    await interaction.response.defer(ephemeral=True, thinking=True)
    channel = interaction.channel
    try:
        own = [m async for m in channel.history(limit=HISTORY_SCAN_LIMIT) if m.author.id == bot.user.id][:count]
    except discord.HTTPException as e:
        await _record_failure(interaction, 'delete_messages_failed', 'delete_messages', e)
        return await _reply(interaction, '❌ Failed to delete messages.')
    if not own:
        return await _reply(interaction, '📭 No bot messages found to delete.')

    deleted = 0
    for message in own:
        try:
            await message.delete()
            deleted += 1
        except discord.HTTPException as e:
            logger.warning("Could not delete message %s: %s", message.id, e)
    await record_activity(
        bot.db, 'messages_deleted', source='discord_slash', channel_id=_channel_id(interaction),
        user_id=str(interaction.user.id), action='delete_messages', emoji='🗑️',
        metadata={'requested': count, 'deleted': deleted},
    )
    await _reply(interaction, f"🗑️ Deleted {deleted} bot message(s) from this channel.")


SLASH_COMMANDS = (
    add_task, add_reminder, list_reminders, list_tasks, delete_reminder, delete_task, complete_task,
    delete_messages,
)


def run() -> None:
    settings = Settings.from_env()
    if not settings.token:
        raise SystemExit("BOT_TOKEN is not set")
    handler = RotatingFileHandler(filename=settings.log_file, encoding='utf-8', maxBytes=5_000_000, backupCount=3)
    bot = CadenceBot(settings)
    bot.run(settings.token, log_handler=handler, log_level=settings.log_level, root_logger=True)
