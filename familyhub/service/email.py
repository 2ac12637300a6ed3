from __future__ import annotations

import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

from familyhub.logging import get_logger, redact_email

logger = get_logger(__name__)

_STRINGS = {
    "verify_subject": {"en": "Verify your email address", "de": "Bestaetige deine E-Mail-Adresse"},
    "verify_heading": {"en": "Welcome to Family Hub!", "de": "Willkommen bei Family Hub!"},
    "verify_body": {
        "en": "Please click the button below to verify your email address.",
        "de": "Bitte klicke auf den Button, um deine E-Mail-Adresse zu bestaetigen.",
    },
    "verify_button": {"en": "Verify Email", "de": "E-Mail bestaetigen"},
    "expiry_24h": {"en": "This link expires in 24 hours.", "de": "Dieser Link ist 24 Stunden gueltig."},
    "reset_subject": {"en": "Reset your password", "de": "Passwort zuruecksetzen"},
    "reset_body": {
        "en": "You requested a password reset for your Family Hub account. Click the button below to set a new password.",
        "de": "Du hast ein Passwort-Reset fuer dein Family Hub Konto angefordert. Klicke auf den Button, um ein neues Passwort zu setzen.",
    },
    "reset_button": {"en": "Reset Password", "de": "Passwort zuruecksetzen"},
    "expiry_1h": {"en": "This link expires in 1 hour.", "de": "Dieser Link ist 1 Stunde gueltig."},
    "reset_ignore": {
        "en": "If you didn't request this, you can safely ignore this email.",
        "de": "Falls du dies nicht angefordert hast, kannst du diese E-Mail ignorieren.",
    },
    "change_verify_subject": {"en": "Verify your new email address", "de": "Bestaetige deine neue E-Mail-Adresse"},
    "change_verify_body": {
        "en": "Please verify your new email address by clicking the button below.",
        "de": "Bitte bestaetige deine neue E-Mail-Adresse, indem du auf den Button klickst.",
    },
    "changed_subject": {"en": "Your email address has been changed", "de": "Deine E-Mail-Adresse wurde geaendert"},
    "changed_body": {
        "en": "The email address for your Family Hub account has been changed to {new_email}.",
        "de": "Die E-Mail-Adresse fuer dein Family Hub Konto wurde zu {new_email} geaendert.",
    },
    "2fa_on_subject": {"en": "Two-factor authentication enabled", "de": "Zwei-Faktor-Authentifizierung aktiviert"},
    "2fa_on_body": {
        "en": "Two-factor authentication has been enabled on your Family Hub account. You will now need an authenticator app code when signing in.",
        "de": "Zwei-Faktor-Authentifizierung wurde fuer dein Family Hub Konto aktiviert. Du benoetigst jetzt einen Authenticator-App-Code beim Anmelden.",
    },
    "2fa_off_subject": {"en": "Two-factor authentication disabled", "de": "Zwei-Faktor-Authentifizierung deaktiviert"},
    "2fa_off_body": {
        "en": "Two-factor authentication has been disabled on your Family Hub account. Your account is now protected by password only.",
        "de": "Zwei-Faktor-Authentifizierung wurde fuer dein Family Hub Konto deaktiviert. Dein Konto ist jetzt nur noch durch ein Passwort geschuetzt.",
    },
    "linked_subject": {"en": "New sign-in method linked", "de": "Neue Anmeldemethode verknuepft"},
    "linked_body": {
        "en": "{provider} sign-in has been linked to your Family Hub account.",
        "de": "Die Anmeldung mit {provider} wurde mit deinem Family Hub Konto verknuepft.",
    },
    "unlinked_subject": {"en": "Sign-in method removed", "de": "Anmeldemethode entfernt"},
    "unlinked_body": {
        "en": "{provider} sign-in has been removed from your Family Hub account.",
        "de": "Die Anmeldung mit {provider} wurde von deinem Family Hub Konto entfernt.",
    },
    "security_warning": {
        "en": "If you did not make this change, please secure your account immediately.",
        "de": "Falls du diese Aenderung nicht vorgenommen hast, sichere bitte umgehend dein Konto.",
    },
    "footer": {
        "en": "This email was sent by Family Hub. Please do not reply.",
        "de": "Diese E-Mail wurde von Family Hub gesendet. Bitte nicht antworten.",
    },
}

_PROVIDER_LABELS = {"google": "Google", "microsoft": "Microsoft"}


def _t(key: str, locale: str, **fields: str) -> str:
    table = _STRINGS[key]
    text = table.get(locale) or table["en"]
    return text.format(**fields) if fields else text


class EmailService:
    """Transactional email for account security events.

    Sends over SMTP with STARTTLS or implicit TLS. When SMTP is not
    configured (local development, tests) messages are logged instead.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Family Hub",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _layout(self, locale: str, paragraphs: list[str], link: Optional[tuple[str, str]] = None) -> str:
        body = "".join(f"<p>{html.escape(p)}</p>" for p in paragraphs)
        if link:
            label, url = link
            safe_url = html.escape(url, quote=True)
            body += (
                f'<p style="margin:24px 0;"><a href="{safe_url}" style="display:inline-block;'
                f"padding:12px 28px;background:#3b82f6;color:#ffffff;text-decoration:none;"
                f'border-radius:8px;font-weight:600;">{html.escape(label)}</a></p>'
                f'<p style="font-size:12px;color:#71717a;word-break:break-all;">{safe_url}</p>'
            )
        return (
            f'<!DOCTYPE html><html lang="{locale}"><head><meta charset="utf-8"></head>'
            '<body style="font-family:-apple-system,BlinkMacSystemFont,\'Segoe UI\',Roboto,sans-serif;">'
            '<div style="max-width:520px;margin:0 auto;padding:32px;">'
            '<h1 style="color:#3b82f6;font-size:20px;">Family Hub</h1>'
            f"{body}"
            f'<p style="font-size:12px;color:#71717a;">{html.escape(_t("footer", locale))}</p>'
            "</div></body></html>"
        )

    def _compose(
        self,
        to_email: str,
        subject: str,
        locale: str,
        paragraphs: list[str],
        link: Optional[tuple[str, str]] = None,
    ) -> bool:
        text_parts = list(paragraphs)
        if link:
            text_parts.insert(1, link[1])
        text_body = "\n\n".join(text_parts + ["---", _t("footer", locale)])
        return self._send_email(
            to_email, subject, self._layout(locale, paragraphs, link), text_body
        )

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP. Returns True if handed off successfully."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

    def send_email_verification(self, to_email: str, token: str, locale: str = "en") -> bool:
        url = f"{self.base_url}/verify-email?token={token}"
        return self._compose(
            to_email,
            _t("verify_subject", locale),
            locale,
            [_t("verify_heading", locale), _t("verify_body", locale), _t("expiry_24h", locale)],
            link=(_t("verify_button", locale), url),
        )

    def send_password_reset(self, to_email: str, token: str, locale: str = "en") -> bool:
        url = f"{self.base_url}/reset-password?token={token}"
        return self._compose(
            to_email,
            _t("reset_subject", locale),
            locale,
            [_t("reset_body", locale), _t("expiry_1h", locale), _t("reset_ignore", locale)],
            link=(_t("reset_button", locale), url),
        )

    def send_email_change_verification(self, to_email: str, token: str, locale: str = "en") -> bool:
        url = f"{self.base_url}/verify-email?token={token}&change=1"
        return self._compose(
            to_email,
            _t("change_verify_subject", locale),
            locale,
            [_t("change_verify_body", locale), _t("expiry_24h", locale)],
            link=(_t("verify_button", locale), url),
        )

    def send_email_changed_notice(self, to_email: str, new_email: str, locale: str = "en") -> bool:
        return self._compose(
            to_email,
            _t("changed_subject", locale),
            locale,
            [_t("changed_body", locale, new_email=new_email), _t("security_warning", locale)],
        )

    def send_two_factor_enabled(self, to_email: str, locale: str = "en") -> bool:
        return self._compose(
            to_email,
            _t("2fa_on_subject", locale),
            locale,
            [_t("2fa_on_body", locale), _t("security_warning", locale)],
        )

    def send_two_factor_disabled(self, to_email: str, locale: str = "en") -> bool:
        return self._compose(
            to_email,
            _t("2fa_off_subject", locale),
            locale,
            [_t("2fa_off_body", locale), _t("security_warning", locale)],
        )

    def send_account_linked(self, to_email: str, provider: str, locale: str = "en") -> bool:
        label = _PROVIDER_LABELS.get(provider, provider)
        return self._compose(
            to_email,
            _t("linked_subject", locale),
            locale,
            [_t("linked_body", locale, provider=label), _t("security_warning", locale)],
        )

    def send_account_unlinked(self, to_email: str, provider: str, locale: str = "en") -> bool:
        label = _PROVIDER_LABELS.get(provider, provider)
        return self._compose(
            to_email,
            _t("unlinked_subject", locale),
            locale,
            [_t("unlinked_body", locale, provider=label), _t("security_warning", locale)],
        )
