import json

import aiosqlite

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL DEFAULT 'New chat',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    data TEXT NOT NULL
);
"""


class SQLiteStore:
    """Durable home of conversation snapshots, one JSON document per row."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._db: aiosqlite.Connection | None = None

    @property
    def db(self) -> aiosqlite.Connection:
        """Return the database connection, raising if not initialized."""
        if self._db is None:
            raise RuntimeError("SQLiteStore not initialized; call initialize() first")
        return self._db

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self._path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA_SQL)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # --- Conversations ---

    async def save_conversation(self, snapshot: dict) -> None:
        await self.db.execute(
            """INSERT INTO conversations (id, title, created_at, updated_at, data)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   title = excluded.title,
                   updated_at = excluded.updated_at,
                   data = excluded.data""",
            (
                snapshot["id"],
                snapshot["title"],
                snapshot["createdAt"],
                snapshot["updatedAt"],
                json.dumps(snapshot),
            ),
        )
        await self.db.commit()

    async def list_conversations(self) -> list[dict]:
        cursor = await self.db.execute(
            "SELECT id, title, created_at, updated_at FROM conversations ORDER BY updated_at DESC"
        )
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def get_conversation(self, conversation_id: str) -> dict | None:
        cursor = await self.db.execute(
            "SELECT data FROM conversations WHERE id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return json.loads(row["data"]) if row else None

    async def load_all(self) -> list[dict]:
        cursor = await self.db.execute("SELECT data FROM conversations ORDER BY updated_at DESC")
        rows = await cursor.fetchall()
        return [json.loads(r["data"]) for r in rows]

    async def delete_conversation(self, conversation_id: str) -> bool:
        cursor = await self.db.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
        await self.db.commit()
        return cursor.rowcount > 0

    async def clear(self) -> None:
        await self.db.execute("DELETE FROM conversations")
        await self.db.commit()
