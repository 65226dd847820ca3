"""
Operator Notifications Module

Sends Telegram alerts to the platform operators' chat about trial runs
and school suspensions. In-app notifications for school admins and
super-admins are written by the notification dispatcher; this channel is
for the people on call.

Every entry point returns bool and never raises: an alert that cannot be
delivered must not fail a trial run.
"""
import logging
from typing import Any, Dict, Optional
from aiogram import Bot
import config
from app import i18n
from app.core.feature_flags import get_feature_flags

logger = logging.getLogger(__name__)

OPERATOR_LANGUAGE = "en"


def create_operator_bot() -> Optional[Bot]:
    """
    Bot used for operator alerts.

    Returns:
        Bot instance, or None when BOT_TOKEN / ADMIN_TELEGRAM_ID are not configured
    """
    if not config.OPERATOR_ALERTS_ENABLED:
        return None
    return Bot(token=config.BOT_TOKEN)


async def send_admin_notification(
    bot: Optional[Bot],
    message: str,
    notification_type: str = "custom",
    parse_mode: Optional[str] = None,
    **kwargs
) -> bool:
    """
    Unified entry point for operator alerts.

    - Logs every delivery attempt
    - Handles errors gracefully (logs but doesn't crash)

    Args:
        bot: Telegram bot instance (None = alerts disabled)
        message: Alert text
        notification_type: For logging ("trial_suspended", "trial_run_summary", "trial_run_failed", ...)
        parse_mode: Parse mode for message (None, "HTML", "Markdown")
        **kwargs: Passed to bot.send_message

    Returns:
        bool: True if sent, False otherwise
    """
    if bot is None or not config.ADMIN_TELEGRAM_ID:
        logger.debug(f"ADMIN_NOTIFICATION_SKIPPED [type={notification_type}, reason=not_configured]")
        return False

    if not get_feature_flags().operator_alerts_enabled:
        logger.info(f"ADMIN_NOTIFICATION_SKIPPED [type={notification_type}, reason=operator_alerts_disabled]")
        return False

    try:
        logger.info(f"ADMIN_NOTIFICATION_ATTEMPT [type={notification_type}, admin_id={config.ADMIN_TELEGRAM_ID}]")

        await bot.send_message(
            config.ADMIN_TELEGRAM_ID,
            message,
            parse_mode=parse_mode or None,
            **kwargs
        )

        logger.info(f"ADMIN_NOTIFICATION_SENT [type={notification_type}, admin_id={config.ADMIN_TELEGRAM_ID}]")
        return True

    except Exception as e:
        logger.error(
            f"ADMIN_NOTIFICATION_FAILED [type={notification_type}, admin_id={config.ADMIN_TELEGRAM_ID}, "
            f"error={type(e).__name__}: {str(e)[:100]}]"
        )
        return False


async def notify_admin_tenant_suspended(bot: Optional[Bot], tenant_id: str, payload: Dict[str, Any]) -> bool:
    unknown = i18n.get_text(OPERATOR_LANGUAGE, "common.unknown")
    message = i18n.get_text(
        OPERATOR_LANGUAGE,
        "operator.suspended_alert",
        tenant_id=tenant_id,
        school_name=payload.get("school_name") or unknown,
        admin_name=payload.get("admin_name") or unknown,
        admin_email=payload.get("admin_email") or unknown,
    )
    return await send_admin_notification(bot, message, notification_type="trial_suspended")


async def notify_admin_trial_run(bot: Optional[Bot], summary) -> bool:
    """
    Alert operators about a finished run.

    Quiet runs (no actions, no errors) are not reported.

    Args:
        summary: RunSummary
    """
    if summary.outcome == "failed":
        message = i18n.get_text(
            OPERATOR_LANGUAGE,
            "operator.run_failed",
            trigger_type=summary.trigger_type,
            run_error=summary.run_error,
        )
        return await send_admin_notification(bot, message, notification_type="trial_run_failed")

    if summary.actions_taken == 0 and not summary.per_tenant_errors:
        return False

    message = i18n.get_text(
        OPERATOR_LANGUAGE,
        "operator.run_summary",
        trigger_type=summary.trigger_type,
        trials_checked=summary.trials_checked,
        warnings_sent=summary.warnings_sent,
        expiry_notices_sent=summary.expiry_notices_sent,
        accounts_suspended=summary.accounts_suspended,
        grace_reminders_sent=summary.grace_reminders_sent,
        errors=len(summary.per_tenant_errors),
        execution_time_ms=summary.execution_time_ms,
    )
    return await send_admin_notification(bot, message, notification_type="trial_run_summary")
