"""Deadman Notifier - Check-in Based Email Escalation.

This script implements a dead man's switch driven by a check-in timestamp.
It is meant to be invoked periodically by an external scheduler (cron, a
systemd timer, a CI workflow). Each invocation compares the time of the
user's last check-in against two thresholds and sends email accordingly.

The system works by:
- Reading a JSON configuration file (SMTP relay, thresholds, templates)
- Reading the last check-in time from a plain text file
- Sending a reminder email to the user once the reminder threshold passes
- Sending an alert email to every family member once the deadman threshold passes

Key Features:
- Single script design for ease of use and editing
- Strict configuration validation with pydantic
- One independent SMTP session per email, a failed send never stops the others
- Dry run mode for safe configuration and testing

Usage:
    python deadman_notifier.py [config.json] [--dry-run]

Examples:
    python deadman_notifier.py                          # Uses ./config.json
    python deadman_notifier.py /etc/deadman/config.json
    python deadman_notifier.py --dry-run                # Print emails, send nothing

Check-in File:
    The file named by ``checkin_file`` holds a single integer: the Unix time
    of the last check-in. It is written by whatever mechanism the user checks
    in with and is only ever read here. A missing or unparsable file counts as
    a check-in at time 0, which escalates immediately.

Testing:
    The doctests in this module and the tests/ directory run with:
    python -m pytest
"""

from __future__ import annotations

import argparse
import contextlib
import re
import smtplib
import ssl
import sys
import time
from dataclasses import dataclass
from email.errors import MessageError
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import StrEnum
from pathlib import Path

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    SecretStr,
    ValidationError,
    field_validator,
)

EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
CHECKIN_PATTERN = re.compile(r"\+?([0-9]+)")
MAX_CHECKIN = 2**64 - 1


class DeadMansSwitchException(Exception):
    """Base exception for dead man's switch errors.

    Every subclass carries a ``label`` naming the kind of failure, used by
    the CLI when it aborts.

    Examples:
        >>> try:
        ...     raise DeadMansSwitchException("Test error")
        ... except DeadMansSwitchException as e:
        ...     str(e), e.label
        ('Test error', "Dead man's switch error")
    """

    label = "Dead man's switch error"


class ConfigError(DeadMansSwitchException):
    """The configuration could not be loaded. Always fatal."""

    label = "Configuration error"


class ConfigFileError(ConfigError):
    """The configuration file is missing or unreadable."""

    label = "Configuration file error"


class ConfigSchemaError(ConfigError):
    """The configuration file is not JSON or does not match the schema."""

    label = "Configuration schema error"


class AddressFormatError(DeadMansSwitchException):
    """A sender or recipient address is malformed.

    This is a configuration defect, so it aborts the run before any SMTP
    connection is attempted.
    """

    label = "Invalid email address"


class DeliveryError(DeadMansSwitchException):
    """A single email could not be delivered.

    Raised inside EmailServer and reported by EmailServer.send, it never
    reaches the CLI.
    """

    label = "Delivery error"


def validate_address(address: str) -> None:
    """Validate an email address with a basic format check.

    Raises:
        AddressFormatError: If the address is malformed

    Examples:
        >>> validate_address("valid@example.com")
        >>> try:
        ...     validate_address("invalid-email")
        ... except AddressFormatError as e:
        ...     print(e)
        Invalid email address: 'invalid-email'
        >>> try:
        ...     validate_address("two words@example.com")
        ... except AddressFormatError:
        ...     print("Validation failed as expected")
        Validation failed as expected
    """
    if not isinstance(address, str) or not EMAIL_PATTERN.fullmatch(address):
        raise AddressFormatError(f"Invalid email address: {address!r}")


class Config(BaseModel):
    """Configuration loaded once at startup and never mutated.

    The schema is total: every field is required and values are not coerced
    (``"5"`` is not an integer). Unknown fields are ignored. Sender and
    recipient addresses are checked on load, as are subjects, which must fit
    on one line.

    ``counter_file``, ``count_sent_mail`` and ``files_to_attach`` are reserved.
    They must be present for compatibility with existing config files but
    nothing reads them.

    ``days_reminder`` is expected to be smaller than ``days_deadman``. This is
    not enforced; when it does not hold the reminder can never fire because
    the deadman threshold is always checked first.

    Examples:
        >>> try:
        ...     Config.model_validate({"smtp_host": "smtp.example.com"})
        ... except ValidationError as e:
        ...     e.error_count()
        17

        >>> config = Config.model_construct(days_reminder=5)
        >>> try:
        ...     config.days_reminder = 6
        ... except ValidationError:
        ...     print("Config is immutable")
        Config is immutable
    """

    model_config = ConfigDict(strict=True, frozen=True, extra="ignore")

    smtp_host: str
    smtp_port: int = Field(ge=0, le=65535)
    smtp_user: str
    smtp_password: SecretStr
    from_email: str
    to_email: str
    checkin_file: str
    counter_file: str = Field(description="Reserved, unused.")
    days_reminder: NonNegativeInt
    days_deadman: NonNegativeInt
    seconds_in_a_day: NonNegativeInt
    count_sent_mail: int = Field(ge=0, le=2**32 - 1, description="Reserved, unused.")
    family_members: list[str]
    files_to_attach: list[str] = Field(description="Reserved, unused.")
    reminder_subject: str
    reminder_message: str
    dead_man_activation_subject: str
    dead_man_activation_message: str

    @field_validator("from_email", "to_email")
    @classmethod
    def check_address(cls, value: str) -> str:
        if not EMAIL_PATTERN.fullmatch(value):
            raise ValueError(f"invalid email address {value!r}")
        return value

    @field_validator("family_members")
    @classmethod
    def check_family_members(cls, value: list[str]) -> list[str]:
        invalid = [member for member in value if not EMAIL_PATTERN.fullmatch(member)]
        if invalid:
            raise ValueError(f"invalid email address(es) {invalid!r}")
        return value

    @field_validator("reminder_subject", "dead_man_activation_subject")
    @classmethod
    def check_subject(cls, value: str) -> str:
        # a line break in a header would start a new header
        if "\r" in value or "\n" in value:
            raise ValueError("subject must be a single line")
        return value

    @classmethod
    def from_file(cls, path: str | Path) -> Config:
        """Load and validate a JSON configuration file.

        Args:
            path: Path to the JSON configuration file

        Returns:
            Config: The validated configuration

        Raises:
            ConfigFileError: If the file is missing or unreadable
            ConfigSchemaError: If the content is not JSON or misses/mistypes fields

        Examples:
            >>> try:
            ...     Config.from_file("/nonexistent/config.json")
            ... except ConfigFileError as e:
            ...     "could not be read" in str(e)
            True
        """
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigFileError(f"Config file {path} could not be read: {e}") from e
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise ConfigSchemaError(f"Config file {path} is invalid: {e}") from e

    def deadline(self, last_checkin: int, days: int) -> int:
        """Unix time at which ``days`` full days have passed since ``last_checkin``.

        Examples:
            >>> Config.model_construct(seconds_in_a_day=86400).deadline(100, 2)
            172900
        """
        return last_checkin + days * self.seconds_in_a_day


def read_last_checkin(path: str | Path) -> int:
    """Read the last check-in time from the check-in file.

    The trimmed content must be a base-10 unsigned 64-bit integer. Anything
    else, including a missing file, counts as a check-in at time 0. This is
    not an error: if we cannot prove the user checked in we assume the worst.
    A diagnostic is printed to stderr.

    Examples:
        >>> import tempfile
        >>> with tempfile.NamedTemporaryFile(mode='w', suffix='.txt', delete=False) as f:
        ...     _ = f.write("1700000000\\n")
        ...     temp_path = Path(f.name)
        >>> read_last_checkin(temp_path)
        1700000000
        >>> _ = temp_path.write_text("-5")
        >>> read_last_checkin(temp_path)
        0
        >>> temp_path.unlink()
        >>> read_last_checkin(temp_path)
        0
    """
    try:
        content = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        print(
            f"Could not read check-in file {path}: {e}. Assuming last check-in at 0.",
            file=sys.stderr,
        )
        return 0
    match = CHECKIN_PATTERN.fullmatch(content.strip())
    # 20 digits bounds the int() conversion below
    if match and len(match.group(1)) <= 20 and int(match.group(1)) <= MAX_CHECKIN:
        return int(match.group(1))
    print(
        f"Check-in file {path} does not hold a valid timestamp: {content.strip()!r}. "
        "Assuming last check-in at 0.",
        file=sys.stderr,
    )
    return 0


class State(StrEnum):
    """Possible outcomes of one evaluation.

    Examples:
        >>> [s.value for s in State]
        ['no action', 'send reminder', 'send deadman alert']
        >>> State.NO_ACTION == "no action"
        True
    """

    NO_ACTION = "no action"
    SEND_REMINDER = "send reminder"
    SEND_DEADMAN_ALERT = "send deadman alert"


@dataclass(frozen=True)
class Email:
    """A notification request: one recipient, one subject, one body.

    Attributes:
        to: Recipient email address (must be valid format)
        subject: Email subject line
        body: Email body content

    Examples:
        >>> email = Email("test@example.com", "Hello", "Test message")
        >>> email.to
        'test@example.com'
        >>> email.subject
        'Hello'

        >>> # Invalid email should raise exception
        >>> try:
        ...     Email("invalid-email", "Subject", "Body")
        ... except AddressFormatError:
        ...     print("Invalid email caught")
        Invalid email caught
    """

    to: str
    subject: str
    body: str

    def __post_init__(self) -> None:
        validate_address(self.to)


@dataclass(frozen=True)
class Decision:
    """What one evaluation decided and which emails it produced."""

    state: State
    emails: tuple[Email, ...] = ()


def evaluate(now: int, last_checkin: int, config: Config) -> Decision:
    """Decide what to send, given the current time and the last check-in.

    The deadman threshold is checked first. Only when it has not passed is
    the reminder threshold checked, so an invocation sends either alerts or a
    reminder, never both. Both thresholds are inclusive.

    Nothing remembers earlier notifications: every invocation past the
    deadman threshold alerts every family member again.

    Args:
        now: Current Unix time in seconds
        last_checkin: Unix time of the last check-in, 0 if unknown
        config: Thresholds, recipients and templates

    Returns:
        Decision: The outcome and the emails to send for it

    Raises:
        AddressFormatError: If a recipient of the selected outcome is malformed

    Examples:
        >>> config = Config.model_construct(
        ...     days_reminder=5, days_deadman=10, seconds_in_a_day=86400,
        ...     to_email="me@example.com",
        ...     family_members=["mom@example.com", "dad@example.com"],
        ...     reminder_subject="Check in", reminder_message="Please check in.",
        ...     dead_man_activation_subject="Alert", dead_man_activation_message="No check-in.",
        ... )
        >>> evaluate(86400 * 4, 0, config).state
        <State.NO_ACTION: 'no action'>
        >>> decision = evaluate(86400 * 6, 0, config)
        >>> decision.state, [e.to for e in decision.emails]
        (<State.SEND_REMINDER: 'send reminder'>, ['me@example.com'])
        >>> decision = evaluate(86400 * 11, 0, config)
        >>> decision.state, [e.to for e in decision.emails]
        (<State.SEND_DEADMAN_ALERT: 'send deadman alert'>, ['mom@example.com', 'dad@example.com'])

        >>> # Thresholds are inclusive
        >>> evaluate(86400 * 10, 0, config).state
        <State.SEND_DEADMAN_ALERT: 'send deadman alert'>
    """
    if now >= config.deadline(last_checkin, config.days_deadman):
        emails = tuple(
            Email(
                to=member,
                subject=config.dead_man_activation_subject,
                body=config.dead_man_activation_message,
            )
            for member in config.family_members
        )
        return Decision(State.SEND_DEADMAN_ALERT, emails)
    if now >= config.deadline(last_checkin, config.days_reminder):
        reminder = Email(
            to=config.to_email,
            subject=config.reminder_subject,
            body=config.reminder_message,
        )
        return Decision(State.SEND_REMINDER, (reminder,))
    return Decision(State.NO_ACTION)


class DeadMansSwitch:
    """Runs one evaluation and dispatches its emails.

    Examples:
        >>> config = Config.model_construct(checkin_file="/nonexistent/checkin")
        >>> dms = DeadMansSwitch(config, dry_run=True)
        >>> dms._dry_run
        True
    """

    def __init__(self, config: Config, dry_run: bool = False) -> None:
        """Initialize the dead man's switch.

        Args:
            config: Validated configuration
            dry_run: Print the emails that would be sent instead of sending them
        """
        self._config = config
        self._dry_run = dry_run

    def run(self, now: int | None = None) -> Decision:
        """Evaluate the switch and send whatever the evaluation calls for.

        Args:
            now: Current Unix time, read from the clock when omitted

        Returns:
            Decision: The evaluation that was acted upon

        Raises:
            AddressFormatError: If a recipient or the sender is malformed.
                Raised before any email is sent.
        """
        last_checkin = read_last_checkin(self._config.checkin_file)
        if now is None:
            now = int(time.time())
        print(f"Last check-in: {last_checkin}")
        print(f"Seconds since last check-in: {now - last_checkin}")

        validate_address(self._config.from_email)
        decision = evaluate(now, last_checkin, self._config)
        match decision.state:
            case State.NO_ACTION:
                print("No action needed")
                return decision
            case State.SEND_REMINDER:
                print("Reminder threshold passed, sending reminder")
            case State.SEND_DEADMAN_ALERT:
                if not decision.emails:
                    print("Deadman threshold passed but no family members are configured")
                    return decision
                print(
                    f"Deadman threshold passed, alerting {len(decision.emails)} family member(s)"
                )

        if self._dry_run:
            for email in decision.emails:
                print(f"Dry run, not sending: {email.subject!r} to {email.to}")
            return decision
        EmailServer(self._config).send_all(decision.emails)
        return decision


class EmailServer:
    """Sends emails through the configured SMTP relay.

    Each email gets its own authenticated session. Port 465 uses implicit TLS,
    any other port upgrades the connection with STARTTLS.

    Attributes:
        SMTP_TIMEOUT_SECONDS: Timeout for connecting to and talking with the relay
        IMPLICIT_TLS_PORT: Port on which the relay expects TLS from the start
    """

    SMTP_TIMEOUT_SECONDS = 30
    IMPLICIT_TLS_PORT = 465

    def __init__(self, config: Config) -> None:
        """Initialize the email server from the configuration.

        Raises:
            AddressFormatError: If ``from_email`` is malformed

        Examples:
            >>> config = Config.model_construct(from_email="not-an-address")
            >>> try:
            ...     EmailServer(config)
            ... except AddressFormatError:
            ...     print("Sender rejected")
            Sender rejected
        """
        validate_address(config.from_email)
        self._config = config

    @property
    def email(self) -> str:
        """The sender address."""
        return self._config.from_email

    def _get_smtp_server(self) -> smtplib.SMTP:
        """Open an encrypted, authenticated connection to the relay.

        Raises:
            DeliveryError: If connection, TLS or authentication fails
        """
        host = self._config.smtp_host
        port = self._config.smtp_port
        implicit_tls = port == self.IMPLICIT_TLS_PORT
        try:
            if implicit_tls:
                server = smtplib.SMTP_SSL(
                    host,
                    port,
                    timeout=self.SMTP_TIMEOUT_SECONDS,
                    context=ssl.create_default_context(),
                )
            else:
                server = smtplib.SMTP(host, port, timeout=self.SMTP_TIMEOUT_SECONDS)
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(
                f"Failed to connect to email server {host}:{port}: {e}"
            ) from e

        try:
            if not implicit_tls:
                server.starttls(context=ssl.create_default_context())
            server.login(
                self._config.smtp_user, self._config.smtp_password.get_secret_value()
            )
        except smtplib.SMTPAuthenticationError as e:
            server.close()
            raise DeliveryError(
                f"Failed to authenticate with email server. "
                f"Check smtp_user and smtp_password. Error: {e}"
            ) from e
        except (smtplib.SMTPException, OSError) as e:
            server.close()
            raise DeliveryError(f"SMTP error occurred: {e}") from e
        return server

    def _build_message(self, email: Email) -> MIMEMultipart:
        msg = MIMEMultipart()
        msg["From"] = self.email
        msg["To"] = email.to
        msg["Subject"] = email.subject
        msg.attach(MIMEText(email.body, "plain"))
        return msg

    def _deliver(self, email: Email) -> None:
        """Deliver one email in its own session.

        Raises:
            DeliveryError: If anything goes wrong along the way
        """
        msg = self._build_message(email)
        server = self._get_smtp_server()
        try:
            server.send_message(msg)
        except (smtplib.SMTPException, OSError, MessageError) as e:
            raise DeliveryError(f"Failed to send email to {email.to}: {e}") from e
        else:
            # the relay already accepted the message
            with contextlib.suppress(smtplib.SMTPException, OSError):
                server.quit()
        finally:
            server.close()

    def send(self, email: Email) -> bool:
        """Make one delivery attempt, reporting the result.

        Failures are printed to stderr and never raised. There is no retry:
        the next scheduled invocation is the retry.

        Returns:
            bool: True if the relay accepted the email
        """
        try:
            self._deliver(email)
        except DeliveryError as e:
            print(f"Error sending email: {e}", file=sys.stderr)
            return False
        print("Email successfully sent.")
        return True

    def send_all(self, emails: tuple[Email, ...] | list[Email]) -> int:
        """Send each email independently.

        Returns:
            int: Number of emails the relay accepted
        """
        return sum(self.send(email) for email in emails)


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the deadman notifier CLI.

    Exits with status 0 after any completed evaluation, including when some
    emails failed to send, and with status 1 on configuration errors.

    Examples:
        >>> try:
        ...     main(["/nonexistent/config.json"])
        ... except SystemExit as e:
        ...     e.code.startswith("Configuration file error")
        True
    """
    parser = argparse.ArgumentParser(
        description="Deadman Notifier - Email a reminder, then your family, when you stop checking in",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                          # Use ./config.json
  %(prog)s /etc/deadman/config.json # Use another config file
  %(prog)s --dry-run                # Print the emails instead of sending them
        """,
    )

    parser.add_argument(
        "config",
        nargs="?",
        default="config.json",
        help="Path to the JSON configuration file (default: config.json).",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Evaluate and print the emails that would be sent, without sending.",
    )

    args = parser.parse_args(argv)

    try:
        config = Config.from_file(args.config)
        DeadMansSwitch(config, dry_run=args.dry_run).run()
    except (ConfigError, AddressFormatError) as e:
        sys.exit(f"{e.label}: {e}")


if __name__ == "__main__":
    main()
