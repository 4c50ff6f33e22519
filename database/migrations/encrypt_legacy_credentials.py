#!/usr/bin/env python3
"""
Encrypt connection credentials that were stored before the vault existed
"""
from finsync.database import engine
from finsync.app.account_sync.encryption import CredentialVault
from sqlalchemy import text

vault = CredentialVault()

with engine.connect() as conn:
    result = conn.execute(text("SELECT id, encrypted_credential FROM connections"))
    rows = result.fetchall()

    print(f"Found {len(rows)} connections to check")

    converted = 0
    for connection_id, stored in rows:
        if not stored or vault.is_encrypted(stored):
            continue

        # Never print the credential itself
        print(f"Encrypting credential for connection {connection_id}")
        conn.execute(
            text("UPDATE connections SET encrypted_credential = :sealed WHERE id = :id"),
            {"sealed": vault.seal(stored), "id": connection_id}
        )
        converted += 1

    conn.commit()
    print(f"Encryption complete! {converted} credentials migrated")
