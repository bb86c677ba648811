"""
Outgoing email over SMTP and the message bodies used by alerting.
"""
import smtplib
from email.message import EmailMessage
from typing import Optional

import structlog

from ..config import Settings


class MailerError(Exception):
    pass


class Mailer:
    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def configured(self) -> bool:
        s = self.settings
        return bool(s.enable_email and s.smtp_host and s.mail_from)

    def send(self, to: str, subject: str, body: str, html: Optional[str] = None) -> None:
        s = self.settings
        if not self.configured:
            raise MailerError("Invio email non configurato")
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = s.mail_from
        msg["To"] = to
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
        try:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout_seconds) as smtp:
                if s.smtp_tls:
                    smtp.starttls()
                if s.smtp_username and s.smtp_password:
                    smtp.login(s.smtp_username, s.smtp_password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            structlog.get_logger().warning("email_send_failed", to=to, subject=subject, error=str(e))
            raise MailerError(str(e)) from e
        structlog.get_logger().info("email_sent", to=to, subject=subject)


def overdue_todolist_message(device_name: str, device_id: str, scheduled_label: str, deadline_label: str, link: str):
    subject = f"[SICET] Todolist scaduta - {device_name}"
    body = (
        "Una todolist non è stata completata entro la finestra prevista.\n\n"
        f"Punto di controllo: {device_name} ({device_id})\n"
        f"Programmata per: {scheduled_label}\n"
        f"Scadenza: {deadline_label}\n\n"
        f"Dettagli: {link}\n"
    )
    return subject, body


def kpi_alert_message(kpi_name: str, device_name: str, triggered: list, link: str):
    subject = f"[SICET Alert] {kpi_name} - {device_name}"
    lines = [f"- {t['field']}: {t['value']} ({t['reason']})" for t in triggered]
    body = (
        f"Il controllo \"{kpi_name}\" sul punto di controllo \"{device_name}\" "
        "ha registrato valori fuori soglia:\n\n"
        + "\n".join(lines)
        + f"\n\nDettagli: {link}\n"
    )
    return subject, body
