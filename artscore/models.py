from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


class StoreNode(db.Model):
    """One leaf of the shared tree, addressed by its slash-separated path."""
    __tablename__ = 'store_node'

    path = db.Column(db.String(512), primary_key=True)
    value = db.Column(db.Text, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.String(20), nullable=True)
    actor = db.Column(db.String(120), nullable=True)
    action = db.Column(db.String(120), nullable=False)
    details = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
