"""
/setuproles wizard.

    /setuproles ──► mode select (role_mode_select)
                      ├─ none / levels / classes ──► Save (save_roles_button:<mode>)
                      └─ custom ──► multi-select (custom_roles_multiselect) ──► Save

Save validates the session synchronously, then acknowledges and runs the
reconciler in the background; the wizard message is edited with the result.
"""
from fastapi import BackgroundTasks

from discord_verify.exceptions import ExpiredError, InvalidSetupSessionError
from discord_verify.logging_config import get_logger
from discord_verify.models.roles import ALL_ROLE_KEYS, CLASS_NAMES, LEVEL_NAMES, RoleKey, RoleMode
from discord_verify.models.setup_session import SetupSession, SetupState
from discord_verify.services.reconciler import ReconcileReport
from discord_verify.state import AppState
from discord_verify.webhooks.common import (
    Interaction,
    action_row,
    button,
    complete_deferred,
    deferred_update,
    followup,
    message,
    select_option,
    string_select,
    update_message,
)

logger = get_logger(__name__)

MODE_SELECT_ID = "role_mode_select"
CUSTOM_SELECT_ID = "custom_roles_multiselect"
SAVE_BUTTON_PREFIX = "save_roles_button:"

MODE_DESCRIPTIONS = {
    RoleMode.NONE: "Only assign the verified role",
    RoleMode.LEVELS: f"{' and '.join(LEVEL_NAMES)} ({len(LEVEL_NAMES)} roles)",
    RoleMode.CLASSES: f"{CLASS_NAMES[0]} through {CLASS_NAMES[-1]} ({len(CLASS_NAMES)} roles)",
    RoleMode.CUSTOM: "Choose which levels and classes to assign",
}


def _error(text: str) -> dict:
    return update_message(f"# Error\n\n{text}")


def _save_row(mode: RoleMode) -> dict:
    return action_row(button(f"{SAVE_BUTTON_PREFIX}{mode.value}", "Save"))


# ──────────────────── Views ────────────────────

def mode_select_view(current_mode: RoleMode) -> dict:
    options = [
        # custom is never pre-selected so picking it again reopens the multi-select
        select_option(mode.label, mode.value, MODE_DESCRIPTIONS[mode], default=(mode is current_mode and mode is not RoleMode.CUSTOM))
        for mode in RoleMode
    ]
    return message(
        "# Role Config\nConfigure how roles are automatically assigned to users after verification.",
        components=[action_row(string_select(MODE_SELECT_ID, options, "Select role assignment mode"))],
    )


def mode_preview_view(mode: RoleMode) -> dict:
    if mode is RoleMode.NONE:
        return update_message(
            "# None Mode\nOnly the verified role will be assigned to users after verification.\n"
            "Roles previously created by the bot will be deleted.",
            components=[_save_row(mode)],
        )
    names = LEVEL_NAMES if mode is RoleMode.LEVELS else CLASS_NAMES
    roles_list = "\n".join(f"* {name}" for name in names)
    return update_message(
        f"# {mode.label} Mode\nThe following roles will be created:\n\n{roles_list}",
        components=[_save_row(mode)],
    )


def custom_select_view() -> dict:
    options = [select_option(key.display_name, str(key)) for key in ALL_ROLE_KEYS]
    return update_message(
        "# Custom Mode\nSelect any combination of level-based and class-based roles.",
        components=[
            action_row(
                string_select(
                    CUSTOM_SELECT_ID,
                    options,
                    "Select which roles to create",
                    min_values=1,
                    max_values=len(options),
                )
            ),
            _save_row(RoleMode.CUSTOM),
        ],
    )


def report_view(report: ReconcileReport) -> dict:
    if report.mode is RoleMode.NONE and report.ok:
        return followup(
            "# Mode Updated\nRole assignment mode has been set to **None**.\n\n"
            "Only the verified role will be assigned to users after verification.",
            components=[],
        )

    lines = []
    for label, bucket in (
        ("created", report.created),
        ("reused", report.reused),
        ("recreated", report.recreated),
        ("unchanged", report.kept),
    ):
        lines.extend(f"* <@&{role_id}> ({label})" for _, role_id in sorted(bucket.items()))
    lines.extend(f"* {key.display_name} (deleted)" for key in report.deleted)

    title = "# Success" if report.ok else "# Saved with errors"
    text = f"{title}\nRole assignment mode has been set to **{report.mode.label}**.\n\n"
    if lines:
        text += "\n".join(lines) + "\n\n"
    if report.failed:
        text += "These roles could not be updated:\n"
        text += "\n".join(f"* {key.display_name}: {error}" for key, error in sorted(report.failed.items()))
        text += "\n\nRun `/setuproles` again to retry.\n"
    else:
        text += "Users will now automatically receive these roles when they verify."
    return followup(text, components=[])


# ──────────────────── Handlers ────────────────────

async def handle_setup_roles_command(interaction: Interaction, state: AppState, background: BackgroundTasks) -> dict:
    if interaction.guild_id is None:
        return message("This command can only be used in a server.")
    if not interaction.is_admin:
        return message("You need administrator permissions to configure role assignment.")

    current_mode = await state.resolver.stored_mode(interaction.guild_id)
    await state.setup_sessions.open(interaction.guild_id, interaction.user_id)
    return mode_select_view(current_mode)


async def handle_setup_roles_wizard_step(
    interaction: Interaction, state: AppState, background: BackgroundTasks
) -> dict:
    custom_id = interaction.custom_id
    if interaction.guild_id is None or not interaction.is_admin:
        return message("You need administrator permissions to configure role assignment.")

    try:
        if custom_id == MODE_SELECT_ID:
            return await _select_mode(interaction, state)
        if custom_id == CUSTOM_SELECT_ID:
            return await _select_custom(interaction, state)
        if custom_id.startswith(SAVE_BUTTON_PREFIX):
            return await _save(interaction, state, background)
    except ExpiredError as e:
        return _error(e.message)

    logger.warning("unknown_component", custom_id=custom_id)
    return deferred_update()


async def _select_mode(interaction: Interaction, state: AppState) -> dict:
    mode = RoleMode.parse(interaction.values[0] if interaction.values else None)
    await state.setup_sessions.select_mode(interaction.guild_id, interaction.user_id, mode)
    if mode is RoleMode.CUSTOM:
        return custom_select_view()
    return mode_preview_view(mode)


async def _select_custom(interaction: Interaction, state: AppState) -> dict:
    role_keys = set()
    for raw in interaction.values:
        try:
            role_keys.add(RoleKey.parse(raw))
        except ValueError:
            logger.warning("unknown_role_key_selected", value=raw, guild_id=interaction.guild_id)

    session = state.setup_sessions.peek(interaction.guild_id, interaction.user_id)
    if session is not None and session.mode is not RoleMode.CUSTOM:
        return _error("Select the Custom mode before choosing roles.")

    await state.setup_sessions.select_custom(interaction.guild_id, interaction.user_id, frozenset(role_keys))
    return deferred_update()


async def _save(interaction: Interaction, state: AppState, background: BackgroundTasks) -> dict:
    try:
        session = await state.setup_sessions.take_validated(interaction.guild_id, interaction.user_id)
    except InvalidSetupSessionError as e:
        return _error(e.message)

    button_mode = RoleMode.parse(interaction.custom_id[len(SAVE_BUTTON_PREFIX):])
    if button_mode is not session.mode:
        # stale button from an earlier wizard message; the session is authoritative
        logger.info("save_button_mode_mismatch", button=button_mode.value, session=session.mode.value)

    background.add_task(complete_deferred, state.discord, interaction, lambda: apply_session(state, session))
    return deferred_update()


async def apply_session(state: AppState, session: SetupSession) -> dict:
    report = await state.reconciler.reconcile(session.guild_id, session.mode, session.custom_keys)
    session.state = SetupState.COMMITTED
    return report_view(report)
