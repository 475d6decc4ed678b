from sqlalchemy import func
from armonyco.extensions import db

class Hotel(db.Model):
    __tablename__ = "organization_hotels"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer,
        db.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    hotel_name = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    organization = db.relationship("Organization", back_populates="hotels")

    def __repr__(self) -> str:
        return f"<Hotel id={self.id} organization_id={self.organization_id} name={self.hotel_name!r}>"
