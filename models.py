from flask_sqlalchemy import SQLAlchemy
from datetime import datetime
import enum

db = SQLAlchemy()

# ============================================
# 0. 列舉型別
# ============================================
class Role(enum.IntEnum):
    """
    專案角色,數值即權限等級: viewer < editor < admin

    所有權限比較都透過 satisfies(),不要在別處自己比字串
    """
    VIEWER = 1
    EDITOR = 2
    ADMIN = 3

    @property
    def label(self):
        return self.name.lower()

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(f"Unknown role: {value}")

    @classmethod
    def labels(cls):
        return [role.label for role in cls]

    def satisfies(self, required):
        return self >= Role.parse(required)


class InvitationStatus(enum.Enum):
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    DECLINED = 'declined'
    INVALID = 'invalid'  # 專案被封存或刪除


TASK_COLUMNS = ['todo', 'doing', 'done']
TASK_PRIORITIES = ['low', 'medium', 'high', 'urgent']
NOTE_TYPES = ['notice', 'issue', 'reminder', 'important', 'other']

# ============================================
# 1. User 模型
# ============================================
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    username = db.Column(db.String(50), unique=True, nullable=False, index=True)
    full_name = db.Column(db.String(100), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)

    bio = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=True)

    # 線上狀態 (由 socket 連線/斷線更新)
    is_online = db.Column(db.Boolean, default=False)
    last_seen = db.Column(db.DateTime)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    notifications = db.relationship('Notification', backref='user', lazy=True, cascade='all,delete-orphan')

# ============================================
# 2. Project 模型
# ============================================
class Project(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    markdown_content = db.Column(db.Text, default='')
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    # settings
    doing_column_limit = db.Column(db.Integer, nullable=False, default=5)
    is_archived = db.Column(db.Boolean, default=False, nullable=False)
    archived_at = db.Column(db.DateTime)
    archived_by = db.Column(db.Integer, db.ForeignKey('user.id'))

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 成員與邀請只屬於這個專案,沒有獨立生命週期
    creator = db.relationship('User', foreign_keys=[creator_id])
    members = db.relationship('ProjectMember', backref='project', lazy=True,
                              cascade='all,delete-orphan', order_by='ProjectMember.id')
    invitations = db.relationship('ProjectInvitation', backref='project', lazy=True,
                                  cascade='all,delete-orphan', order_by='ProjectInvitation.id')
    tasks = db.relationship('Task', backref='project', lazy=True, cascade='all,delete-orphan')
    notes = db.relationship('Note', backref='project', lazy=True, cascade='all,delete-orphan')

    __table_args__ = (
        db.Index('idx_project_creator', 'creator_id'),
    )

    @classmethod
    def create_with_creator(cls, creator, name, description=None, doing_column_limit=5):
        """
        建立專案並把建立者加為唯一的 admin 成員

        建立者的 member entry 只在這裡產生,之後不能移除也不能降級
        """
        project = cls(
            name=name,
            description=description,
            creator_id=creator.id,
            doing_column_limit=doing_column_limit
        )
        project.members.append(ProjectMember(user_id=creator.id, role=Role.ADMIN))
        return project

    def find_member(self, user_id):
        return next((m for m in self.members if m.user_id == int(user_id)), None)

    def find_invitation(self, invitation_id):
        return next((i for i in self.invitations if i.id == int(invitation_id)), None)

    def member_user_ids(self):
        return [m.user_id for m in self.members]

# ============================================
# 3. ProjectMember 模型
# ============================================
class ProjectMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    role = db.Column(db.Enum(Role, name='project_role'), nullable=False, default=Role.VIEWER)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User', backref='project_memberships')

    __table_args__ = (
        db.UniqueConstraint('project_id', 'user_id', name='unique_project_member'),
    )

# ============================================
# 4. ProjectInvitation 模型
# ============================================
class ProjectInvitation(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    invited_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    role = db.Column(db.Enum(Role, name='invitation_role'), nullable=False, default=Role.VIEWER)
    # pending 唯一性是 check-then-insert,沒有資料庫層的 unique 約束
    status = db.Column(db.Enum(InvitationStatus, name='invitation_status'),
                       nullable=False, default=InvitationStatus.PENDING)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    responded_at = db.Column(db.DateTime)

    user = db.relationship('User', foreign_keys=[user_id])
    inviter = db.relationship('User', foreign_keys=[invited_by])

    @property
    def is_pending(self):
        return self.status == InvitationStatus.PENDING

# ============================================
# 5. 多對多關聯表
# ============================================
task_assignees = db.Table('task_assignees',
    db.Column('task_id', db.Integer, db.ForeignKey('task.id'), primary_key=True),
    db.Column('user_id', db.Integer, db.ForeignKey('user.id'), primary_key=True)
)

note_tagged_users = db.Table('note_tagged_users',
    db.Column('note_id', db.Integer, db.ForeignKey('note.id'), primary_key=True),
    db.Column('user_id', db.Integer, db.ForeignKey('user.id'), primary_key=True)
)

note_referenced_tasks = db.Table('note_referenced_tasks',
    db.Column('note_id', db.Integer, db.ForeignKey('note.id'), primary_key=True),
    db.Column('task_id', db.Integer, db.ForeignKey('task.id'), primary_key=True)
)

# ============================================
# 6. Task 模型
# ============================================
class Task(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.String(1000))
    column = db.Column(db.String(10), nullable=False, default='todo')  # todo, doing, done
    priority = db.Column(db.String(10), nullable=False, default='medium')  # low, medium, high, urgent
    tags = db.Column(db.JSON, default=list)
    is_archived = db.Column(db.Boolean, default=False, nullable=False)

    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    due_date = db.Column(db.DateTime, nullable=True)

    creator = db.relationship('User', foreign_keys=[created_by])
    assignees = db.relationship('User', secondary=task_assignees, lazy='selectin')
    comments = db.relationship('TaskComment', backref='task', lazy=True,
                               cascade='all,delete-orphan', order_by='TaskComment.id')

    __table_args__ = (
        db.Index('idx_task_project_column', 'project_id', 'column'),
        db.Index('idx_task_created_by', 'created_by'),
    )

# ============================================
# 7. TaskComment 模型
# ============================================
class TaskComment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    content = db.Column(db.String(500), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    user = db.relationship('User')

# ============================================
# 8. Note 模型
# ============================================
class Note(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), nullable=False)  # notice, issue, reminder, important, other
    is_archived = db.Column(db.Boolean, default=False, nullable=False)
    is_pinned = db.Column(db.Boolean, default=False, nullable=False)

    project_id = db.Column(db.Integer, db.ForeignKey('project.id'), nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    author = db.relationship('User', foreign_keys=[created_by])
    tagged_users = db.relationship('User', secondary=note_tagged_users, lazy='selectin')
    # backref 讓刪除任務時一併清掉關聯表
    referenced_tasks = db.relationship('Task', secondary=note_referenced_tasks, lazy='selectin',
                                       backref=db.backref('referencing_notes', lazy=True))

    __table_args__ = (
        db.Index('idx_note_project_archived', 'project_id', 'is_archived'),
    )

# ============================================
# 9. Notification 模型
# ============================================
class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    type = db.Column(db.String(50), nullable=False)  # project_invitation, task_assigned, etc
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    data = db.Column(db.JSON, default=dict)
    is_read = db.Column(db.Boolean, default=False, nullable=False)
    read_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    __table_args__ = (
        db.Index('idx_notification_user_read', 'user_id', 'is_read'),
    )
