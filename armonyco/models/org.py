from sqlalchemy import func
from armonyco.extensions import db

class Organization(db.Model):
    __tablename__ = "organizations"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    billing_email = db.Column(db.String(255), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, server_default=db.true())

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    hotels = db.relationship("Hotel", back_populates="organization", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Organization id={self.id} name={self.name!r}>"
