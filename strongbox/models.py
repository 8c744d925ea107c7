from datetime import datetime
from strongbox import db


class BackupRun(db.Model):
    """One execution of a backup model"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    model_name = db.Column(db.String(255), nullable=False, index=True)
    run_id = db.Column(db.String(32), nullable=False)  # YYYY.MM.DD.HH.MM.SS, shared by all backends
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed, cancelled
    state = db.Column(db.String(20), nullable=False, default='idle')  # last state reached
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    total_bytes = db.Column(db.BigInteger)
    checksum = db.Column(db.String(80))
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationship
    backend_results = db.relationship('BackendResult', back_populates='run', cascade='all, delete-orphan',
                                      order_by='BackendResult.id')

    def __repr__(self):
        return f'<BackupRun {self.model_name} {self.run_id} status={self.status}>'


class BackendResult(db.Model):
    """Outcome of one run on one storage backend"""
    __tablename__ = 'backend_results'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    backend_name = db.Column(db.String(255), nullable=False)
    backend_type = db.Column(db.String(20), nullable=False)  # local or s3
    status = db.Column(db.String(20), nullable=False)  # success, failed, cancelled
    location = db.Column(db.String(1000))
    chunks = db.Column(db.Integer)
    pruned = db.Column(db.Integer, default=0, nullable=False)
    prune_error = db.Column(db.Text)
    error_message = db.Column(db.Text)

    # Relationship
    run = db.relationship('BackupRun', back_populates='backend_results')

    def __repr__(self):
        return f'<BackendResult {self.backend_name} status={self.status}>'
