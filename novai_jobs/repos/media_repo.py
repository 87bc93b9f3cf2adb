from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence

import asyncpg


class MediaCatalog(Protocol):
    async def list_videos(self, collection_ids: Sequence[str]) -> List[Dict[str, Any]]:
        ...

    async def list_audio(self, collection_ids: Sequence[str]) -> List[Dict[str, Any]]:
        ...

    async def get_hooks(self, hook_ids: Sequence[str]) -> List[Dict[str, Any]]:
        ...

    async def get_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def get_audio(self, audio_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def create_video(self, row: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def delete_video(self, video_id: str) -> None:
        ...


_VIDEO_COLUMNS = "t.id::text AS id, t.collection_id, t.name, t.url, t.storage_path, t.duration, t.created_at"
_AUDIO_COLUMNS = "t.id::text AS id, t.collection_id, t.name, t.url, t.created_at"


class MediaRepo:
    """Videos, audio tracks and hook texts that variant batches draw from."""

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _ordered_by_collection(self, table: str, columns: str, collection_ids: Sequence[str]) -> List[Dict[str, Any]]:
        # collection order first, then item order inside each collection
        sql = f"""
        SELECT {columns}
        FROM {table} t
        JOIN unnest($1::text[]) WITH ORDINALITY AS c(collection_id, ord)
          ON t.collection_id = c.collection_id
        ORDER BY c.ord, t.created_at, t.id
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, list(collection_ids))
        return [dict(r) for r in rows]

    async def list_videos(self, collection_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not collection_ids:
            return []
        return await self._ordered_by_collection("videos", _VIDEO_COLUMNS, collection_ids)

    async def list_audio(self, collection_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not collection_ids:
            return []
        return await self._ordered_by_collection("audio_files", _AUDIO_COLUMNS, collection_ids)

    async def get_hooks(self, hook_ids: Sequence[str]) -> List[Dict[str, Any]]:
        if not hook_ids:
            return []
        sql = """
        SELECT h.id::text AS id, h.text
        FROM hooks h
        JOIN unnest($1::text[]) WITH ORDINALITY AS i(hook_id, ord)
          ON h.id::text = i.hook_id
        ORDER BY i.ord
        """
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, list(hook_ids))
        return [dict(r) for r in rows]

    async def get_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_VIDEO_COLUMNS} FROM videos t WHERE t.id::text = $1", video_id)
        return dict(row) if row else None

    async def get_audio(self, audio_id: str) -> Optional[Dict[str, Any]]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_AUDIO_COLUMNS} FROM audio_files t WHERE t.id::text = $1", audio_id)
        return dict(row) if row else None

    async def create_video(self, row: Dict[str, Any]) -> Dict[str, Any]:
        sql = """
        INSERT INTO videos (collection_id, name, url, storage_path, duration)
        VALUES ($1, $2, $3, $4, $5)
        RETURNING id::text AS id, collection_id, name, url, storage_path, duration, created_at
        """
        async with self.pool.acquire() as conn:
            rec = await conn.fetchrow(
                sql,
                row.get("collection_id"),
                row["name"],
                row["url"],
                row.get("storage_path"),
                row.get("duration"),
            )
        return dict(rec)

    async def delete_video(self, video_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("DELETE FROM videos WHERE id::text = $1", video_id)
