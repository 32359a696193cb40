"""
Notification utilities for Roster Sync.

Sends run reports and failure alerts by email (SMTP) and/or as a Slack
channel message. A notification that cannot be delivered is logged; it never
changes the outcome of the run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional
from datetime import datetime

import httpx

from roster_sync.models import ExclusionReason, NormalizationReport, SyncResult

logger = logging.getLogger(__name__)

SLACK_POST_URL = 'https://slack.com/api/chat.postMessage'
MAX_LISTED_ITEMS = 10


class NotificationError(Exception):
    """Exception raised when notification sending fails."""
    pass


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False

    if not email_to:
        logger.error("No email recipients configured")
        return False

    if isinstance(email_to, str):
        email_to = [email_to]

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")
    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port, timeout=30)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port, timeout=30)
            if smtp_tls:
                server.starttls()

        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def post_slack_message(text: str, config: Dict[str, Any],
                       client: Optional[httpx.Client] = None) -> bool:
    """
    Post a message to the configured Slack channel with chat.postMessage.

    Returns:
        True if Slack accepted the message
    """
    if not config.get('enable_slack', False):
        logger.debug("Slack notifications disabled")
        return False

    token = config.get('slack_token')
    channel = config.get('slack_channel')
    if not token or not channel:
        logger.error("Slack notifications need slack_token and slack_channel")
        return False

    try:
        if client is not None:
            response = client.post(SLACK_POST_URL, json={'channel': channel, 'text': text},
                                   headers={'Authorization': f"Bearer {token}"})
        else:
            response = httpx.post(SLACK_POST_URL, json={'channel': channel, 'text': text},
                                  headers={'Authorization': f"Bearer {token}"}, timeout=30)
        response.raise_for_status()
        payload = response.json()
        if not payload.get('ok'):
            raise NotificationError(f"Slack rejected notification: {payload.get('error', 'unknown_error')}")
    except (httpx.HTTPError, ValueError, NotificationError) as e:
        logger.error(f"Failed to post Slack notification: {e}")
        return False

    logger.info(f"Slack notification posted to {channel}")
    return True


def _format_runtime(runtime_seconds: float) -> str:
    if runtime_seconds > 60:
        minutes = int(runtime_seconds // 60)
        return f"{minutes}m {runtime_seconds % 60:.1f}s"
    return f"{runtime_seconds:.2f} seconds"


def _capped(lines: List[str]) -> List[str]:
    shown = [f"  {i}. {line}" for i, line in enumerate(lines[:MAX_LISTED_ITEMS], 1)]
    if len(lines) > MAX_LISTED_ITEMS:
        shown.append(f"  ... and {len(lines) - MAX_LISTED_ITEMS} more")
    return shown


def format_sync_report(result: Optional[SyncResult], report: Optional[NormalizationReport],
                       stats: Optional[Dict[str, Any]] = None) -> str:
    """
    Render a plain-text run report.

    Args:
        result: Outcome of applying the plan (None for dry runs)
        report: Normalization report with exclusions and counters
        stats: Extra run statistics (runtime_seconds, source_entries, dry_run)
    """
    stats = stats or {}
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')

    body_lines = [
        "Roster Sync Report",
        f"Timestamp: {timestamp}",
        f"Runtime: {_format_runtime(stats.get('runtime_seconds', 0))}",
        "",
    ]

    if stats.get('dry_run'):
        body_lines.extend(["Dry run: no changes were written to the sink.", ""])

    if report is not None:
        body_lines.extend([
            "Roster:",
            f"  Source entries: {stats.get('source_entries', 'n/a')}",
            f"  Published members: {len(report.desired)}",
            f"  Alumni: {report.alumni_count}",
            f"  Default avatars: {report.default_avatar_count}",
            f"  Excluded: {len(report.exclusions)}",
            "",
        ])

        grouped = report.exclusions_by_reason()
        for reason in ExclusionReason:
            if reason == ExclusionReason.ALUMNI or not grouped.get(reason.value):
                continue
            body_lines.append(f"Excluded ({reason.value}):")
            body_lines.extend(_capped([
                f"{exclusion.display_name or '(no name)'} <{exclusion.identity or 'no email'}>"
                + (f": {exclusion.detail}" if exclusion.detail else '')
                for exclusion in grouped[reason.value]
            ]))
            body_lines.append("")

    if result is not None:
        body_lines.extend([
            "Sink changes:",
            f"  Created: {result.created}",
            f"  Updated: {result.updated}",
            f"  Deleted: {result.deleted}",
            f"  Errors: {len(result.errors)}",
            "",
        ])
        if result.errors:
            body_lines.append("Errors:")
            body_lines.extend(_capped([
                f"{error.operation} {error.identity}: {error.message}" for error in result.errors
            ]))
            body_lines.append("")

    body_lines.append("This is an automated message from Roster Sync.")
    return '\n'.join(body_lines)


def send_sync_report(result: Optional[SyncResult], report: Optional[NormalizationReport],
                     config: Dict[str, Any], stats: Optional[Dict[str, Any]] = None) -> bool:
    """
    Send the run report to the enabled channels.

    Clean runs are reported only when `email_on_success` / `slack_on_success`
    is set; runs with item errors are always reported.

    Returns:
        True if at least one channel delivered the report
    """
    has_errors = result is not None and result.has_errors
    body = format_sync_report(result, report, stats)
    subject = "Roster Sync: Completed with errors" if has_errors else "Roster Sync: Successful Completion"

    sent = False
    if has_errors or config.get('email_on_success', False):
        sent = send_email(subject, body, config) or sent
    if has_errors or config.get('slack_on_success', False):
        sent = post_slack_message(f"*{subject}*\n```{body}```", config) or sent

    if not sent:
        logger.debug("Sync report not sent (no channel enabled for this outcome)")
    return sent


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None,
    sink_changed: bool = False
) -> bool:
    """
    Send notification for run failures.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context
        sink_changed: Whether the run had started writing to the sink

    Returns:
        True if notification sent successfully on any channel
    """
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    subject = f"Roster Sync Alert: {title}"

    body_lines = [
        "Roster Sync Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    if sink_changed:
        body_lines.append("The run failed after sink changes were applied; the sink may be partially updated.")
    else:
        body_lines.append("No changes were written to the sink by this run.")
    body_lines.append("Please check the application logs for more detailed information.")
    body = '\n'.join(body_lines)

    sent = False
    if config.get('email_on_failure', True):
        sent = send_email(subject, body, config) or sent
    if config.get('slack_on_failure', True):
        sent = post_slack_message(f"*{subject}*\n{error_message}", config) or sent
    return sent


def test_notification_config(config: Dict[str, Any]) -> bool:
    """
    Test notification configuration by sending a test message on every enabled channel.

    Returns:
        True if every enabled channel delivered the test message
    """
    test_subject = "Roster Sync: Configuration Test"
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]
    test_body = """This is a test message from Roster Sync.

If you receive this message, your notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}
- Slack Channel: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(email_to) or 'not configured',
        config.get('slack_channel', 'not configured'),
    )

    results = []
    if config.get('enable_email', False):
        results.append(send_email(test_subject, test_body, config))
    if config.get('enable_slack', False):
        results.append(post_slack_message(test_body, config))

    if not results:
        logger.error("No notification channel is enabled")
        return False

    if all(results):
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return all(results)
