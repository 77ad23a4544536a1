from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required, get_jwt_identity, get_jwt
from models import db, User
from marshmallow import Schema, fields, validate, EXCLUDE
from errors import (AuthenticationRequired, Conflict, InternalError,
                    ValidationFailed, validate_request_data)
from datetime import datetime
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class RegisterSchema(Schema):
    """註冊輸入驗證"""
    class Meta:
        unknown = EXCLUDE

    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        validate=validate.Length(min=6, max=128, error='Password must be 6-128 characters'),
        error_messages={'required': 'Password is required'}
    )
    username = fields.Str(
        required=True,
        validate=[
            validate.Length(min=3, max=30, error='Username must be 3-30 characters'),
            validate.Regexp(r'^[a-zA-Z0-9_]+$', error='Username can only contain letters, numbers and underscores')
        ],
        error_messages={'required': 'Username is required'}
    )
    full_name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100),
        error_messages={'required': 'Full name is required'}
    )

class LoginSchema(Schema):
    """登入輸入驗證"""
    class Meta:
        unknown = EXCLUDE

    email = fields.Email(required=True)
    password = fields.Str(required=True)

class UpdateProfileSchema(Schema):
    """個人資料更新驗證"""
    class Meta:
        unknown = EXCLUDE

    full_name = fields.Str(validate=validate.Length(min=1, max=100))
    username = fields.Str(validate=[
        validate.Length(min=3, max=30),
        validate.Regexp(r'^[a-zA-Z0-9_]+$')
    ])
    bio = fields.Str(validate=validate.Length(max=500))

class ChangePasswordSchema(Schema):
    """密碼修改驗證"""
    class Meta:
        unknown = EXCLUDE

    current_password = fields.Str(required=True)
    new_password = fields.Str(
        required=True,
        validate=validate.Length(min=6, max=128)
    )

# ============================================
# Helper Functions
# ============================================

def get_bcrypt():
    """從 Flask app extensions 取得 bcrypt 實例 (不用 global variable)"""
    bcrypt = current_app.extensions.get('bcrypt')
    if bcrypt is None:
        from flask_bcrypt import Bcrypt
        bcrypt = Bcrypt(current_app)
        current_app.extensions['bcrypt'] = bcrypt
    return bcrypt

def hash_password(password):
    return get_bcrypt().generate_password_hash(password).decode('utf-8')

def check_password(user, password):
    return get_bcrypt().check_password_hash(user.password_hash, password)

def public_identity(user):
    """給其他人看的身份資訊 (即時事件裡的「誰做的」)"""
    return {
        'id': user.id,
        'name': user.full_name,
        'username': user.username
    }

def serialize_user(user):
    return {
        'id': user.id,
        'email': user.email,
        'username': user.username,
        'full_name': user.full_name,
        'bio': user.bio,
        'is_online': bool(user.is_online),
        'last_seen': user.last_seen.isoformat() if user.last_seen else None,
        'last_login': user.last_login.isoformat() if user.last_login else None,
        'created_at': user.created_at.isoformat() if user.created_at else None
    }

def ensure_username_available(username, exclude_user_id=None):
    existing = User.query.filter_by(username=username).first()
    if existing and existing.id != exclude_user_id:
        raise Conflict('Username is already taken')

# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
def register():
    """
    使用者註冊

    email 和 username 都不能重複
    """
    result = validate_request_data(RegisterSchema, request.get_json(silent=True))

    if User.query.filter_by(email=result['email']).first():
        raise Conflict('Email already exists')
    ensure_username_available(result['username'])

    user = User(
        email=result['email'],
        username=result['username'],
        full_name=result['full_name'],
        password_hash=hash_password(result['password'])
    )

    try:
        db.session.add(user)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        # 不要把 exception 細節洩漏給前端
        logger.error(f"Registration error for {result['email']}: {str(e)}", exc_info=True)
        raise InternalError('Registration failed due to server error') from e

    logger.info(f"New user registered: {user.email}")

    return jsonify({
        'message': 'User registered successfully',
        'user': serialize_user(user)
    }), 201

# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
def login():
    """
    使用者登入

    不區分是 email 錯還是 password 錯,避免帳號枚舉攻擊
    """
    result = validate_request_data(LoginSchema, request.get_json(silent=True))

    user = User.query.filter_by(email=result['email']).first()

    if not user or not check_password(user, result['password']):
        logger.warning(f"Failed login attempt for email: {result['email']}")
        return jsonify({'error': 'invalid_credentials', 'message': 'Invalid credentials'}), 401

    if not user.is_active:
        logger.warning(f"Inactive user login attempt: {user.email}")
        return jsonify({'error': 'account_disabled', 'message': 'Account is disabled'}), 403

    access_token = create_access_token(identity=str(user.id))
    refresh_token = create_refresh_token(identity=str(user.id))

    try:
        user.last_login = datetime.utcnow()
        db.session.commit()
    except Exception as e:
        # 這個錯誤不影響登入,只記錄就好
        db.session.rollback()
        logger.error(f"Failed to update last_login for {user.email}: {str(e)}")

    logger.info(f"User logged in: {user.email}")

    return jsonify({
        'message': 'Login successful',
        'access_token': access_token,
        'refresh_token': refresh_token,
        'user': serialize_user(user)
    }), 200

# ============================================
# Token 刷新 / 登出
# ============================================

@auth_bp.route('/refresh', methods=['POST'])
@jwt_required(refresh=True)
def refresh():
    """用 refresh token 換新的 access token"""
    user = db.session.get(User, int(get_jwt_identity()))

    if not user or not user.is_active:
        return jsonify({'error': 'invalid_token', 'message': 'Invalid or inactive user'}), 401

    return jsonify({
        'access_token': create_access_token(identity=str(user.id))
    }), 200

@auth_bp.route('/logout', methods=['POST'])
@jwt_required()
def logout():
    """
    登出

    TODO: 把 jti 寫進 Redis blacklist 並接上 token_in_blocklist_loader
    """
    jti = get_jwt()['jti']
    logger.info(f"User logged out: {get_jwt_identity()} (jti={jti})")
    return jsonify({'message': 'Logout successful'}), 200

# ============================================
# 個人資料
# ============================================

@auth_bp.route('/me', methods=['GET'])
@jwt_required()
def get_me():
    user = require_current_user()
    return jsonify(serialize_user(user)), 200

@auth_bp.route('/me', methods=['PATCH'])
@jwt_required()
def update_me():
    """更新當前使用者資料"""
    user = require_current_user()
    result = validate_request_data(UpdateProfileSchema, request.get_json(silent=True))

    if 'username' in result and result['username'] != user.username:
        ensure_username_available(result['username'], exclude_user_id=user.id)

    for field in ['full_name', 'username', 'bio']:
        if field in result:
            setattr(user, field, result[field])

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Profile update error for {user.email}: {str(e)}", exc_info=True)
        raise InternalError('Update failed due to server error') from e

    logger.info(f"User profile updated: {user.email}")

    return jsonify({
        'message': 'Profile updated successfully',
        'user': serialize_user(user)
    }), 200

@auth_bp.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    user = require_current_user()
    result = validate_request_data(ChangePasswordSchema, request.get_json(silent=True))

    if not check_password(user, result['current_password']):
        raise ValidationFailed(
            [{'field': 'current_password', 'message': 'Current password is incorrect'}],
            message='Current password is incorrect'
        )

    user.password_hash = hash_password(result['new_password'])

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Password change error for {user.email}: {str(e)}", exc_info=True)
        raise InternalError('Password change failed due to server error') from e

    logger.info(f"Password changed for user: {user.email}")
    return jsonify({'message': 'Password changed successfully'}), 200

# ============================================
# 輔助函數 (供其他模組使用)
# ============================================

def get_current_user():
    """
    取得當前登入的使用者

    token 合法但使用者已不存在時回傳 None
    """
    user_id = get_jwt_identity()
    if not user_id:
        return None
    return db.session.get(User, int(user_id))

def require_current_user():
    user = get_current_user()
    if not user:
        raise AuthenticationRequired()
    return user

def find_user_by_email_or_username(identifier):
    return User.query.filter(
        (User.email == identifier) | (User.username == identifier)
    ).first()

