#!/usr/bin/env python3
"""
Encrypt SimpleFIN access URLs that are still stored in plaintext
"""
from sqlalchemy import text


def encrypt_legacy_access_urls(conn, encryption) -> int:
    """Encrypt every plaintext access_url in place; returns the number converted."""
    result = conn.execute(text("SELECT id, access_url FROM simplefin_connections"))
    connections = result.fetchall()

    print(f"Found {len(connections)} connections to check")

    converted = 0
    for connection_id, access_url in connections:
        if not access_url or encryption.is_encrypted(access_url):
            continue

        print(f"Encrypting access URL for connection {connection_id}")
        conn.execute(
            text("UPDATE simplefin_connections SET access_url = :access_url WHERE id = :id"),
            {"access_url": encryption.encrypt(access_url), "id": connection_id}
        )
        converted += 1

    conn.commit()
    return converted


if __name__ == "__main__":
    from daycare_backend.database import engine
    from daycare_backend.app.bank_integration.encryption import get_encryption

    with engine.connect() as conn:
        count = encrypt_legacy_access_urls(conn, get_encryption())

    print(f"Encryption complete! {count} access URL(s) converted")
