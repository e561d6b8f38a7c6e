import logging
import smtplib
from datetime import datetime
from email.message import EmailMessage
from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import get_settings


logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"]),
)


class EmailDeliveryError(RuntimeError):
    pass


class Mailer:
    def __init__(self) -> None:
        self.settings = get_settings()

    def _render(self, template: str, **context: object) -> str:
        context.setdefault("year", datetime.now().year)
        context.setdefault("frontend_url", self.settings.frontend_url)
        return _env.get_template(f"emails/{template}").render(**context)

    def send(self, to: str, subject: str, html: str) -> None:
        msg = EmailMessage()
        msg["From"] = self.settings.email_from
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("Ce message nécessite un client email compatible HTML.")
        msg.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(
                self.settings.smtp_host, self.settings.smtp_port, timeout=15
            ) as smtp:
                if self.settings.smtp_use_tls:
                    smtp.starttls()
                if self.settings.smtp_user:
                    smtp.login(self.settings.smtp_user, self.settings.smtp_password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise EmailDeliveryError(f"Failed to send email to {to}") from exc
        logger.info(f"email_sent: to={to} subject={subject!r}")

    def send_password_reset(self, email: str, token: str) -> None:
        link = f"{self.settings.frontend_url}/reset-password?token={token}"
        html = self._render("password_reset.html", reset_link=link)
        self.send(email, "Réinitialisation de votre mot de passe - MoneyWise", html)

    def send_welcome(self, email: str, user_name: str) -> None:
        html = self._render("welcome.html", user_name=user_name)
        self.send(email, "Bienvenue sur MoneyWise !", html)

    def send_password_changed(self, email: str, user_name: str) -> None:
        html = self._render("password_changed.html", user_name=user_name)
        self.send(email, "Votre mot de passe a été modifié - MoneyWise", html)
