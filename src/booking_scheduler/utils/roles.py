def role_label(role_code: str | None) -> str:
    code = (role_code or "").strip().lower()
    return {
        "provider": "the provider",
        "client": "the client",
    }.get(code, code or "—")
