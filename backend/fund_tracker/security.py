from __future__ import annotations

import hashlib
import hmac
import os
import re
from typing import Annotated

from fastapi import Header, HTTPException, Request

from fund_tracker.settings import get_settings

USERNAME_PATTERN = re.compile(r"^[a-z0-9_]{3,32}$")
STORAGE_USER_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{3,64}$")
DEFAULT_STORAGE_USER = "default"
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128
PASSWORD_SCHEME = "scrypt"
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_DKLEN = 64


def normalize_username(value: str) -> str:
	username = value.strip().lower()
	if not USERNAME_PATTERN.fullmatch(username):
		raise ValueError("用户名仅支持 3-32 位小写字母、数字和下划线。")
	return username


def storage_user_id(value: str | None) -> str:
	"""Map the ``user`` query parameter onto a snapshot key owner."""
	candidate = (value or "").strip()
	if STORAGE_USER_PATTERN.fullmatch(candidate):
		return candidate
	return DEFAULT_STORAGE_USER


def validate_password_strength(value: str) -> str:
	password = value
	if not (PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH):
		raise ValueError(
			f"密码长度需在 {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} 位之间。",
		)
	return password


def hash_password(password: str) -> str:
	normalized_password = validate_password_strength(password)
	salt = os.urandom(16)
	derived_key = hashlib.scrypt(
		normalized_password.encode("utf-8"),
		salt=salt,
		n=SCRYPT_N,
		r=SCRYPT_R,
		p=SCRYPT_P,
		dklen=SCRYPT_DKLEN,
	)
	return (
		f"{PASSWORD_SCHEME}${SCRYPT_N}${SCRYPT_R}${SCRYPT_P}"
		f"${salt.hex()}${derived_key.hex()}"
	)


def verify_password(password: str, password_digest: str) -> bool:
	try:
		scheme, n, r, p, salt_hex, expected_hex = password_digest.split("$", maxsplit=5)
		if scheme != PASSWORD_SCHEME:
			return False
		derived_key = hashlib.scrypt(
			validate_password_strength(password).encode("utf-8"),
			salt=bytes.fromhex(salt_hex),
			n=int(n),
			r=int(r),
			p=int(p),
			dklen=len(bytes.fromhex(expected_hex)),
		)
	except (ValueError, TypeError):
		return False

	return hmac.compare_digest(derived_key.hex(), expected_hex)


def verify_admin_password(password: str) -> bool:
	expected = get_settings().admin_password_value()
	if expected is None:
		return False
	return hmac.compare_digest(password.encode("utf-8"), expected.encode("utf-8"))


def get_session_username(request: Request) -> str | None:
	username = request.session.get("username")
	if not isinstance(username, str):
		return None

	try:
		return normalize_username(username)
	except ValueError:
		request.session.clear()
		return None


def require_session_username(request: Request) -> str:
	username = get_session_username(request)
	if username is None:
		raise HTTPException(status_code=401, detail="请先登录。")
	return username


def require_admin(request: Request) -> str:
	username = require_session_username(request)
	if request.session.get("role") != "admin":
		raise HTTPException(status_code=403, detail="需要管理员权限。")
	return username


def verify_api_token(
	request: Request,
	x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
) -> None:
	"""Enforce origin checks and optionally require a shared server token."""
	settings = get_settings()
	origin = request.headers.get("origin")
	if origin and not settings.is_allowed_origin(origin):
		raise HTTPException(status_code=403, detail="Origin not allowed.")

	expected_token = settings.api_token_value()
	if expected_token is None:
		return

	if x_api_key is None:
		raise HTTPException(status_code=401, detail="Missing API token.")

	if x_api_key.strip() != expected_token:
		raise HTTPException(status_code=401, detail="Invalid API token.")
