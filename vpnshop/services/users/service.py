from sqlalchemy.orm import Session

from vpnshop.core.errors import UserNotFound
from vpnshop.models.service import Service
from vpnshop.models.user import User


class UserService:
    def __init__(self, db: Session):
        self.db = db

    def get_or_create_user(
        self,
        telegram_id: str,
        telegram_username: str | None = None,
        first_name: str | None = None,
    ) -> tuple[User, bool]:
        """Returns (user, created). Profile fields are refreshed on every contact."""
        telegram_id = str(telegram_id)
        user = self.get_by_telegram_id(telegram_id)
        if user:
            changed = False
            if telegram_username is not None and user.telegram_username != telegram_username:
                user.telegram_username = telegram_username
                changed = True
            if first_name is not None and user.first_name != first_name:
                user.first_name = first_name
                changed = True
            if changed:
                self.db.add(user)
                self.db.commit()
                self.db.refresh(user)
            return user, False
        user = User(
            telegram_id=telegram_id,
            telegram_username=telegram_username,
            first_name=first_name,
        )
        self.db.add(user)
        self.db.commit()
        self.db.refresh(user)
        return user, True

    def get_by_telegram_id(self, telegram_id: str) -> User | None:
        return self.db.query(User).filter(User.telegram_id == str(telegram_id)).one_or_none()

    def require_by_telegram_id(self, telegram_id: str) -> User:
        user = self.get_by_telegram_id(telegram_id)
        if not user:
            raise UserNotFound()
        return user

    def list_services(self, user: User, active_only: bool = True) -> list[Service]:
        q = self.db.query(Service).filter(Service.user_id == user.id)
        if active_only:
            q = q.filter(Service.is_active.is_(True))
        return q.order_by(Service.created_at.desc()).all()
