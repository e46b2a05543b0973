import smtplib
from email.message import EmailMessage

from flask import current_app


def send_email(to_email: str, subject: str, body: str, config=None):
    """Send a plain-text mail over SMTP. Returns (ok, error)."""
    config = config if config is not None else current_app.config
    host = config.get("SMTP_HOST")
    port = config.get("SMTP_PORT", 587)
    username = config.get("SMTP_USERNAME")
    password = config.get("SMTP_PASSWORD")
    from_email = config.get("SMTP_FROM_EMAIL") or username
    use_tls = config.get("SMTP_USE_TLS", True)

    if not host or not from_email:
        return False, "Email not configured"
    if not to_email:
        return False, "No recipient"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)


def confirmation_message(snapshot: dict):
    """Subject and body for a booking confirmation, built from Booking.to_dict()."""
    start = (snapshot.get("startTime") or "")[11:16]
    end = (snapshot.get("endTime") or "")[11:16]
    subject = f"Booking confirmed - invoice {snapshot.get('invoiceNumber') or snapshot['id']}"
    lines = [
        f"Hi {snapshot.get('userName') or 'there'},",
        "",
        "Your court booking is confirmed.",
        "",
        f"Booking:  {snapshot['id']}",
        f"Invoice:  {snapshot.get('invoiceNumber') or '-'}",
        f"Court:    {snapshot.get('courtId')}",
        f"Date:     {snapshot.get('date')}",
        f"Time:     {start} - {end}",
        f"Amount:   {snapshot.get('price')} {(snapshot.get('currency') or '').upper()}",
        "",
        "See you on court!",
    ]
    return subject, "\n".join(lines)


def send_confirmation(snapshot: dict, config=None):
    subject, body = confirmation_message(snapshot)
    return send_email(snapshot.get("customerEmail"), subject, body, config=config)
