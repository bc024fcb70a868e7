from reconciler.extensions import db


class JobLease(db.Model):
    """Database-backed lease so a periodic job never runs twice at once."""
    __tablename__ = "job_leases"

    name = db.Column(db.String(100), primary_key=True)
    holder = db.Column(db.String(100), nullable=False)
    acquired_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    def __repr__(self):
        return f"<JobLease {self.name} held by {self.holder} until {self.expires_at}>"
