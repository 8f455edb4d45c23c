from datetime import datetime
from flynn_backup import db


class BackupRun(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    archive_name = db.Column(db.String(255))
    file_size_bytes = db.Column(db.BigInteger)
    entries = db.Column(db.Text)  # Comma separated entry names, in archive order
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    def entry_names(self):
        return self.entries.split(',') if self.entries else []

    def __repr__(self):
        return f'<BackupRun {self.archive_name} status={self.status}>'
