# crm_migrator/models/organization.py

from .base import BaseModel, db


class Organization(BaseModel):
    """Tenant that owns migration jobs and the staging rows they write."""

    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    slug = db.Column(db.String(100), unique=True, nullable=False, index=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)

    users = db.relationship("User", back_populates="organization")
    migration_jobs = db.relationship("MigrationJob", back_populates="organization", order_by="MigrationJob.id")

    def __repr__(self):
        return f"<Organization {self.slug}>"
