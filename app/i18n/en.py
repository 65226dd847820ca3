# -*- coding: utf-8 -*-
"""English (en) strings."""

LANG = {
    "common.day": "{count} day",
    "common.days": "{count} days",
    "common.product": "SchoolFlow",

    # Warnings (first / second / final)
    "trial.warning.admin_title": "Trial Expiring Soon - {days_label} Left",
    "trial.warning.admin_message": (
        "Your {trial_days}-day trial will expire in {days_label}. "
        "Please purchase a subscription to continue using {product} without interruption."
    ),
    "trial.warning.admin_title_today": "Trial Expiring Today",
    "trial.warning.admin_message_today": (
        "Your {trial_days}-day trial expires today. "
        "Please purchase a subscription to continue using {product} without interruption."
    ),
    "trial.warning.operator_title": "Trial Expiring Soon - {admin_name}",
    "trial.warning.operator_message": 'School admin "{admin_name}" ({admin_email}) has {days_label} left on their trial.',

    # Trial expired, grace period started
    "trial.expired.admin_title": "Trial Expired - Grace Period Active",
    "trial.expired.admin_message": (
        "Your {trial_days}-day trial has expired. You have a {grace_days}-day grace period "
        "to purchase a subscription before your account is suspended."
    ),
    "trial.expired.operator_title": "Trial Expired - {admin_name}",
    "trial.expired.operator_message": (
        'School admin "{admin_name}" ({admin_email}) trial has expired. Grace period: {grace_days} days.'
    ),

    # Daily grace reminder (tenant admin only)
    "trial.grace_reminder.admin_title": "Grace Period Ending - {days_label} Left",
    "trial.grace_reminder.admin_message": (
        "You have {days_label} left before your account is suspended. "
        "Please purchase a subscription to maintain access."
    ),

    # Suspension
    "trial.suspended.admin_title": "Account Suspended - Trial Expired",
    "trial.suspended.admin_message": (
        "Your account has been suspended because your trial expired and you did not purchase a subscription. "
        "Please contact support or purchase a subscription to reactivate your account."
    ),
    "trial.suspended.operator_title": "School Suspended - Trial Expired",
    "trial.suspended.operator_message": (
        'School admin "{admin_name}" ({admin_email}) has been automatically suspended after trial expiry.'
    ),
    "trial.suspended.operator_message_school": ' School "{school_name}" also suspended.',

    # Operator Telegram alerts
    "operator.suspended_alert": "⛔ Trial suspension\n\nSchool: {school_name}\nAdmin: {admin_name} ({admin_email})\nTenant: {tenant_id}",
    "operator.run_summary": (
        "📋 Trial check ({trigger_type})\n\n"
        "Checked: {trials_checked}\n"
        "Warnings: {warnings_sent}\n"
        "Expiry notices: {expiry_notices_sent}\n"
        "Suspended: {accounts_suspended}\n"
        "Grace reminders: {grace_reminders_sent}\n"
        "Errors: {errors}\n"
        "Duration: {execution_time_ms} ms"
    ),
    "operator.run_failed": "🚨 Trial check failed ({trigger_type})\n\nReason: {run_error}",

    "common.unknown": "unknown",
}
