"""Interactive Telegram authorization for the ``login`` command.

The watcher itself can log in through a QR code, but a first login from a
terminal is friendlier: it supports the phone-code flow and two-step
verification prompts.
"""

from __future__ import annotations

import logging
from getpass import getpass

import qrcode
from telethon import TelegramClient, errors

from milesguard.settings import Secrets

LOGGER = logging.getLogger(__name__)


def print_qr(url: str) -> None:
    qr = qrcode.QRCode(border=1)
    qr.add_data(url)
    qr.make(fit=True)
    qr.print_ascii(invert=True)


def _resolve_2fa_password(secrets: Secrets) -> str:
    if secrets.password:
        return secrets.password
    return getpass("2FA password: ")


async def _authorize_with_qr(client: TelegramClient, timeout: float = 120.0) -> None:
    qr = await client.qr_login()
    print_qr(qr.url)
    await qr.wait(timeout=timeout)


async def _authorize_with_phone(client: TelegramClient, secrets: Secrets) -> None:
    phone = secrets.phone or input("Phone number (international format): ").strip()
    await client.send_code_request(phone)
    code = input("Login code: ").strip()
    try:
        await client.sign_in(phone=phone, code=code)
    except errors.SessionPasswordNeededError:
        await client.sign_in(password=_resolve_2fa_password(secrets))


def _pick_login_method(secrets: Secrets) -> str:
    if secrets.login_method in {"qr", "phone"}:
        return secrets.login_method
    while True:
        print("")
        print("Login methods:")
        print("[1] QR code")
        print("[2] Phone code")
        print("[3] Exit")
        print("Select a login method: \n")
        choice = input("milesguard > ").strip()
        if choice == "1":
            return "qr"
        elif choice == "2":
            return "phone"
        elif choice == "3":
            raise SystemExit(0)
        else:
            print("Invalid option. Please choose 1, 2, or 3.")


async def authorize(client: TelegramClient, secrets: Secrets) -> None:
    if await client.is_user_authorized():
        return

    try:
        method = _pick_login_method(secrets)
        if method == "phone":
            await _authorize_with_phone(client, secrets)
        else:
            await _authorize_with_qr(client)
    except errors.SessionPasswordNeededError:
        await client.sign_in(password=_resolve_2fa_password(secrets))


async def login(client: TelegramClient, secrets: Secrets) -> None:
    """Connect, authorize if needed and report which account is logged in."""

    await client.connect()
    try:
        await authorize(client, secrets)
        me = await client.get_me()
        LOGGER.info("Logged in as: %s", me.first_name)
        print(f"Logged in as: {me.first_name}")
    finally:
        await client.disconnect()
