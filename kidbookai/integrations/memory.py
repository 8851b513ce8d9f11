"""
In-memory collaborators for local runs and tests.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from typing import Iterable, Sequence

from .contracts import Book, PhotoAsset, UserDetails, UserRecord


class InMemoryUserStore:
    def __init__(self) -> None:
        self._users: dict[str, UserRecord] = {}

    async def create_user(self, details: UserDetails) -> str:
        user_id = uuid.uuid4().hex
        self._users[user_id] = UserRecord(id=user_id, details=details)
        return user_id

    async def get_user(self, user_id: str) -> UserRecord | None:
        return self._users.get(user_id)

    async def append_photos(self, user_id: str, photos: Sequence[PhotoAsset]) -> None:
        user = self._require(user_id)
        self._users[user_id] = replace(user, photos=user.photos + tuple(photos))

    async def remove_photos(self, user_id: str, keys: Sequence[str]) -> None:
        user = self._require(user_id)
        doomed = set(keys)
        self._users[user_id] = replace(
            user,
            photos=tuple(photo for photo in user.photos if photo.key not in doomed),
        )

    def _require(self, user_id: str) -> UserRecord:
        user = self._users.get(user_id)
        if user is None:
            raise KeyError(f"User {user_id} not found.")
        return user


class InMemoryBookStore:
    def __init__(self, books: Iterable[Book] = ()) -> None:
        self._books = {book.id: book for book in books}

    def add(self, book: Book) -> None:
        self._books[book.id] = book

    async def get_book(self, book_id: str) -> Book | None:
        return self._books.get(book_id)


class InMemoryObjectStorage:
    """
    Dictionary-backed object storage returning ``memory://`` URLs.
    """

    def __init__(self, *, base_url: str = "memory://kidbookai") -> None:
        self._base_url = base_url.rstrip("/")
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def put(self, data: bytes, key: str, content_type: str) -> str:
        self.objects[key] = (bytes(data), content_type)
        return f"{self._base_url}/{key}"

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)

    def keys(self) -> list[str]:
        return list(self.objects)
