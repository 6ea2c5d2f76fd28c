from dataclasses import dataclass


@dataclass
class UserContext:
    """The caller's active user, carried with each request instead of held globally."""

    user_id: int | None = None

    def clear_if(self, user_id: int) -> bool:
        if self.user_id is not None and self.user_id == user_id:
            self.user_id = None
            return True
        return False
