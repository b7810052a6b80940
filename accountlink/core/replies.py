# Plain-text replies, keyed by outcome. Formatting/markup belongs to the gateway.

RESEND_HINT = "Type /resend to get a new code."

TEXTS = {
    "welcome": "Welcome! Send your email address to register, or the address of your existing account to sign in.",
    "welcome_back": "Welcome back! Your account is verified and ready.",
    "code_pending": "We are waiting for the 6-digit code sent to {email}. " + RESEND_HINT,
    "invalid_email": "That doesn't look like a valid email address. Example: user@example.com",
    "email_conflict": "This email is already linked to another chat account. Use a different email or /cancel.",
    "already_verified": "This chat is already linked to a verified account and can't be merged into another one.",
    "email_unverified": (
        "An account with this email exists but hasn't been verified yet. "
        "Please finish verification from the confirmation email we sent when it was created."
    ),
    "code_sent_register": "We sent a 6-digit code to {email}. Enter it here to verify your email. The code expires in {minutes} minutes.",
    "code_sent_link": "Account found! We sent a 6-digit code to {email}. Enter it here to link this chat. The code expires in {minutes} minutes.",
    "code_resent": "A new 6-digit code has been sent to {email}. It expires in {minutes} minutes.",
    "invalid_code": "Please enter the 6-digit code, for example 123456. " + RESEND_HINT,
    "code_mismatch": "The code you entered doesn't match. {attemptsLeft} attempts remaining. " + RESEND_HINT,
    "code_expired": "Your verification code has expired. " + RESEND_HINT,
    "code_not_found": "That code is no longer valid. " + RESEND_HINT,
    "code_locked": "Too many wrong codes. " + RESEND_HINT,
    "resend_throttled": "You've requested too many codes. Please wait {minutes} minutes and try again.",
    "no_active_verification": "You don't have an active verification. Use /start to begin.",
    "registered": "Email verified! Welcome aboard.",
    "linked": "Your chat is now linked to your account ({email}).",
    "verification_required": "Please verify your email first. Send your email address to get started.",
    "cancelled": "Cancelled.",
    "try_again": "Something went wrong on our side. Please try again in a moment.",
}


def render(outcome: str, **fields) -> str:
    template = TEXTS.get(outcome, "")
    try:
        return template.format(**fields)
    except (KeyError, IndexError):
        return template
