from tenantbill.extensions import db
from tenantbill.utils.clock import utcnow


class User(db.Model):
    """Account holder. Authentication lives outside this service; we only need a mail address."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r}>"
