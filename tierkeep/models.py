import json
from datetime import datetime

from tierkeep import db


class BackupSite(db.Model):
    """A site (directory on a local or SSH host) captured into the hot tier"""
    __tablename__ = 'backup_sites'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    source_type = db.Column(db.String(20), nullable=False)  # 'local' or 'ssh'
    source_config = db.Column(db.Text, nullable=False, default='{}')  # JSON: host, port, username, private_key
    working_dir = db.Column(db.String(1024), nullable=False)
    parent_dir = db.Column(db.String(1024))  # Fallback when working_dir is missing
    label = db.Column(db.String(255))  # Archive name prefix, defaults to site name
    bucket_path = db.Column(db.String(1024))  # None inherits HOT_BUCKET_PATH, '' is bucket root
    use_cold = db.Column(db.Boolean, default=True, nullable=False)
    schedule_cron = db.Column(db.String(100))
    pre_commands = db.Column(db.Text)  # JSON list of shell commands
    post_commands = db.Column(db.Text)  # JSON list of shell commands

    # Retention: smart tiered when retention_smart, else keep N newest when retention_keep is set
    retention_keep = db.Column(db.Integer)
    retention_smart = db.Column(db.Boolean, default=False, nullable=False)
    retention_daily = db.Column(db.Integer, default=14, nullable=False)
    retention_weekly = db.Column(db.Integer, default=26, nullable=False)
    retention_monthly = db.Column(db.Integer, default=6, nullable=False)
    retention_weekly_day = db.Column(db.Integer, default=0, nullable=False)  # 0=Sunday
    retention_monthly_day = db.Column(db.Integer, default=1, nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationship
    history = db.relationship('TransferHistory', back_populates='site', cascade='all, delete-orphan', lazy='dynamic')

    def get_source_config(self) -> dict:
        return json.loads(self.source_config or '{}')

    def get_pre_commands(self) -> list:
        return json.loads(self.pre_commands or '[]')

    def get_post_commands(self) -> list:
        return json.loads(self.post_commands or '[]')

    def to_dict(self) -> dict:
        source_config = self.get_source_config()
        source_config.pop('password', None)
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'enabled': self.enabled,
            'source_type': self.source_type,
            'source_config': source_config,
            'working_dir': self.working_dir,
            'parent_dir': self.parent_dir,
            'label': self.label,
            'bucket_path': self.bucket_path,
            'use_cold': self.use_cold,
            'schedule_cron': self.schedule_cron,
            'pre_commands': self.get_pre_commands(),
            'post_commands': self.get_post_commands(),
            'retention': {
                'keep': self.retention_keep,
                'smart': self.retention_smart,
                'daily': self.retention_daily,
                'weekly': self.retention_weekly,
                'monthly': self.retention_monthly,
                'weekly_day': self.retention_weekly_day,
                'monthly_day': self.retention_monthly_day
            },
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self):
        return f'<BackupSite {self.name} type={self.source_type} enabled={self.enabled}>'


class TransferHistory(db.Model):
    """One capture of a site into the hot (and optionally cold) tier"""
    __tablename__ = 'transfer_history'

    id = db.Column(db.Integer, primary_key=True)
    site_id = db.Column(db.Integer, db.ForeignKey('backup_sites.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    object_key = db.Column(db.String(1024))
    bytes_written = db.Column(db.BigInteger)
    hot_succeeded = db.Column(db.Boolean, default=False, nullable=False)
    cold_succeeded = db.Column(db.Boolean, default=False, nullable=False)
    archive_id = db.Column(db.String(255))
    pruned_count = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)

    # Relationship
    site = db.relationship('BackupSite', back_populates='history')

    def to_dict(self) -> dict:
        duration = None
        if self.completed_at and self.started_at:
            duration = (self.completed_at - self.started_at).total_seconds()
        return {
            'id': self.id,
            'site_id': self.site_id,
            'site_name': self.site.name if self.site else None,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': duration,
            'object_key': self.object_key,
            'bytes_written': self.bytes_written,
            'hot_succeeded': self.hot_succeeded,
            'cold_succeeded': self.cold_succeeded,
            'archive_id': self.archive_id,
            'pruned_count': self.pruned_count,
            'error_message': self.error_message
        }

    def __repr__(self):
        return f'<TransferHistory site_id={self.site_id} status={self.status}>'


class MonitorRun(db.Model):
    """One capacity monitor invocation"""
    __tablename__ = 'monitor_runs'

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False)  # running, within_threshold, preview, bound_exceeded, failed
    dry_run = db.Column(db.Boolean, default=False, nullable=False)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    threshold = db.Column(db.Float, nullable=False)
    initial_used_percent = db.Column(db.Float)
    final_used_percent = db.Column(db.Float)
    iterations = db.Column(db.Integer, default=0, nullable=False)
    migrated_count = db.Column(db.Integer, default=0, nullable=False)
    deleted_count = db.Column(db.Integer, default=0, nullable=False)
    bytes_freed = db.Column(db.BigInteger, default=0, nullable=False)
    error_message = db.Column(db.Text)
    report = db.Column(db.Text)  # JSON MonitorReport

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'status': self.status,
            'dry_run': self.dry_run,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'threshold': self.threshold,
            'initial_used_percent': self.initial_used_percent,
            'final_used_percent': self.final_used_percent,
            'iterations': self.iterations,
            'migrated_count': self.migrated_count,
            'deleted_count': self.deleted_count,
            'bytes_freed': self.bytes_freed,
            'error_message': self.error_message
        }

    def __repr__(self):
        return f'<MonitorRun status={self.status} iterations={self.iterations}>'
