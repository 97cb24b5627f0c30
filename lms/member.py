from __future__ import annotations


class Member:
    """A library member. Holds at most one book at a time."""

    def __init__(self, name: str, address: str, borrowed_book_id: int = 0, member_id: int = 0) -> None:
        self.name = name.strip()
        self.address = address.strip()
        self.borrowed_book_id = int(borrowed_book_id or 0)
        self._id = 0
        if member_id:
            self.assign_id(member_id)

    @property
    def id(self) -> int:
        return self._id

    @property
    def holds_book(self) -> bool:
        return self.borrowed_book_id != 0

    def assign_id(self, member_id: int) -> None:
        """Set the identifier once, when the member is created or loaded."""
        if self._id:
            raise ValueError(f"Member already has id {self._id}")
        if int(member_id) <= 0:
            raise ValueError(f"Member id must be positive, got {member_id}")
        self._id = int(member_id)

    def borrow(self, book_id: int) -> None:
        if book_id <= 0:
            raise ValueError("book_id must be positive")
        self.borrowed_book_id = book_id

    def release(self) -> None:
        self.borrowed_book_id = 0

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.name} ({self.address})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Member(id={self._id}, name={self.name!r}, borrowed_book_id={self.borrowed_book_id})"

    def to_dict(self) -> dict:
        return {
            "id": self._id,
            "name": self.name,
            "address": self.address,
            "borrowed_book_id": self.borrowed_book_id,
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        return Member(
            name=data["name"],
            address=data["address"],
            borrowed_book_id=data.get("borrowed_book_id") or 0,
            member_id=data.get("id") or 0,
        )
