from datetime import timedelta

import bcrypt
from jose import JWTError, jwt
from sqlalchemy.orm import Session as DbSession

from config import SECRET_KEY, ALGORITHM, SESSION_DAYS
from models import Session, User, utcnow


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())


def create_token(session_id: str, expires_at) -> str:
    return jwt.encode({"sid": session_id, "exp": expires_at}, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> str | None:
    """Return the session id carried by a cookie token, or None if it is forged or expired."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    sid = payload.get("sid")
    return sid if isinstance(sid, str) else None


def create_session(db: DbSession, user_id: str) -> str:
    expires_at = utcnow() + timedelta(days=SESSION_DAYS)
    session = Session(user_id=user_id, expires_at=expires_at)
    db.add(session)
    db.commit()
    return create_token(session.id, expires_at)


def resolve_session(db: DbSession, token: str | None) -> User | None:
    if not token:
        return None
    sid = decode_token(token)
    if sid is None:
        return None
    session = db.query(Session).filter(Session.id == sid, Session.expires_at > utcnow()).first()
    if not session:
        return None
    return db.get(User, session.user_id)


def delete_session(db: DbSession, token: str | None) -> None:
    sid = decode_token(token) if token else None
    if sid is None:
        return
    db.query(Session).filter(Session.id == sid).delete()
    db.commit()
