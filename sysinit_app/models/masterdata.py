# sysinit_app/models/masterdata.py
"""
Master-data tables populated by the initialization importer.

Every table written by an import module carries ``import_batch_id`` so the
rollback coordinator can find the rows produced by a single job.
"""

from .base import BaseModel, db


class Location(BaseModel):
    """Physical site (campus, warehouse, office)."""

    __tablename__ = "locations"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    address = db.Column(db.String(500), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    region = db.Column(db.String(100), nullable=True)
    postal_code = db.Column(db.String(20), nullable=True)
    country = db.Column(db.String(2), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    import_batch_id = db.Column(db.String(64), nullable=True, index=True)

    departments = db.relationship("Department", back_populates="location")

    def __repr__(self):
        return f"<Location {self.code}>"


class Department(BaseModel):
    """Organizational unit, optionally nested under a parent department."""

    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    location_id = db.Column(db.Integer, db.ForeignKey("locations.id"), nullable=True, index=True)
    parent_id = db.Column(db.Integer, db.ForeignKey("departments.id"), nullable=True, index=True)
    cost_center = db.Column(db.String(50), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    import_batch_id = db.Column(db.String(64), nullable=True, index=True)

    location = db.relationship("Location", back_populates="departments")
    parent = db.relationship("Department", remote_side=[id], backref="children")

    def __repr__(self):
        return f"<Department {self.code}>"
