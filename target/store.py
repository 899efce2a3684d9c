"""
In-memory JSONPlaceholder-style dataset.

Posts, comments and users are generated deterministically at start-up.
Created posts get sequential ids after the seeded ones but, like the
public service, are not listed afterwards: the dataset stays fixed so
repeated load runs see identical responses.
"""

from __future__ import annotations

import itertools
import threading
from typing import Any


class Store:
    """Read-mostly dataset plus the fault-injection request counter."""

    def __init__(self, post_count: int = 100, user_count: int = 10, comments_per_post: int = 5):
        self.users = [
            {
                "id": user_id,
                "name": f"User {user_id}",
                "username": f"user{user_id}",
                "email": f"user{user_id}@example.test",
            }
            for user_id in range(1, user_count + 1)
        ]
        self.posts = [
            {
                "id": post_id,
                "userId": (post_id - 1) % user_count + 1,
                "title": f"Post {post_id}",
                "body": f"Body of post {post_id}",
            }
            for post_id in range(1, post_count + 1)
        ]
        self.comments = [
            {
                "id": (post_id - 1) * comments_per_post + index,
                "postId": post_id,
                "name": f"Comment {index} on post {post_id}",
                "email": f"commenter{index}@example.test",
                "body": f"Comment body {index}",
            }
            for post_id in range(1, post_count + 1)
            for index in range(1, comments_per_post + 1)
        ]
        self._next_post_id = itertools.count(post_count + 1)
        self._lock = threading.Lock()
        self._request_count = 0

    def post(self, post_id: int) -> dict[str, Any] | None:
        if 1 <= post_id <= len(self.posts):
            return self.posts[post_id - 1]
        return None

    def user(self, user_id: int) -> dict[str, Any] | None:
        if 1 <= user_id <= len(self.users):
            return self.users[user_id - 1]
        return None

    def comments_for(self, post_id: int) -> list[dict[str, Any]]:
        return [comment for comment in self.comments if comment["postId"] == post_id]

    def create_post(self, payload: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            post_id = next(self._next_post_id)
        return {**payload, "id": post_id}

    def next_request_number(self) -> int:
        """1-based sequence number of the current API request."""
        with self._lock:
            self._request_count += 1
            return self._request_count

    @property
    def request_count(self) -> int:
        return self._request_count
