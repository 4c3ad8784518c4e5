# crm_migrator/models/user.py

from flask_login import UserMixin
from werkzeug.security import generate_password_hash

from .base import BaseModel, db


class User(BaseModel, UserMixin):
    """Operator account; migrations are started on behalf of its organization."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=True, index=True)

    organization = db.relationship("Organization", back_populates="users")

    def __repr__(self):
        return f"<User {self.username}>"

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)
