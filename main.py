import logging
import os
import shutil

from fastapi import FastAPI, Depends, HTTPException, Request, UploadFile, File, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from auth import hash_password, verify_password, create_session, resolve_session, delete_session
from config import (
    CORS_ORIGINS, COOKIE_SECURE, HOST, LOG_LEVEL, PORT, PUBLIC_URL,
    SESSION_COOKIE_NAME, SESSION_DAYS, UPLOAD_DIR,
)
from database import Base, SessionLocal, get_db
from models import MessageType, User, default_avatar, utcnow
from relay import Relay
from schemas import LoginRequest, RegisterRequest, UpdateProfileRequest, UserResponse
from store import MessageStore

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

UPLOAD_TYPES = {"image": MessageType.IMAGE, "video": MessageType.VIDEO}


# ----------------- Helpers -----------------
def user_payload(user: User) -> dict:
    return UserResponse.model_validate(user).model_dump()


def save_upload(src, file_path: str) -> None:
    with open(file_path, "wb") as buffer:
        shutil.copyfileobj(src, buffer)


def set_session_cookie(response: JSONResponse, token: str) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        max_age=SESSION_DAYS * 24 * 60 * 60,
        path="/",
    )


def current_user(request: Request, db: Session = Depends(get_db)) -> User:
    user = resolve_session(db, request.cookies.get(SESSION_COOKIE_NAME))
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def get_relay(request: Request) -> Relay:
    return request.app.state.relay


# ----------------- App -----------------
def create_app(session_factory: sessionmaker = SessionLocal) -> FastAPI:
    Base.metadata.create_all(bind=session_factory.kw["bind"])

    app = FastAPI(title="Chat Relay")
    store = MessageStore(session_factory)
    app.state.session_factory = session_factory
    app.state.relay = Relay(store, session_factory)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    os.makedirs(UPLOAD_DIR, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=UPLOAD_DIR), name="uploads")

    # ----------------- Auth -----------------
    @app.post("/api/auth/register")
    def register(data: RegisterRequest, db: Session = Depends(get_db)):
        user = User(
            username=data.username,
            email=data.email or None,
            phone=data.phone or None,
            password_hash=hash_password(data.password),
            avatar_url=default_avatar(data.username),
        )
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=400, detail="User already exists or invalid data")
        db.refresh(user)

        response = JSONResponse({"user": user_payload(user)})
        set_session_cookie(response, create_session(db, user.id))
        logger.info("Registered user %s", user.id)
        return response

    @app.post("/api/auth/login")
    def login(data: LoginRequest, db: Session = Depends(get_db)):
        if "@" in data.identifier:
            user = db.query(User).filter(User.email == data.identifier).first()
        else:
            user = db.query(User).filter(
                or_(User.phone == data.identifier, User.username == data.identifier)
            ).first()

        if not user or not verify_password(data.password, user.password_hash):
            raise HTTPException(status_code=401, detail="Invalid credentials")

        response = JSONResponse({"user": user_payload(user)})
        set_session_cookie(response, create_session(db, user.id))
        return response

    @app.post("/api/auth/logout")
    def logout(request: Request, db: Session = Depends(get_db)):
        delete_session(db, request.cookies.get(SESSION_COOKIE_NAME))
        response = JSONResponse({"success": True})
        response.delete_cookie(SESSION_COOKIE_NAME, path="/")
        return response

    @app.get("/api/auth/me")
    def me(user: User = Depends(current_user)):
        return {"user": user_payload(user)}

    # ----------------- Chats & messages -----------------
    @app.get("/api/chats")
    def chats(user: User = Depends(current_user), relay: Relay = Depends(get_relay)):
        summaries = relay.store.recent_conversations(user.id)
        for chat in summaries:
            chat.online = relay.registry.is_online(chat.id)
        return {"chats": [c.model_dump(mode="json") for c in summaries]}

    @app.get("/api/messages/{user_id}")
    def messages(user_id: str, user: User = Depends(current_user), relay: Relay = Depends(get_relay)):
        conversation = relay.store.get_conversation(user.id, user_id)
        return {"messages": [m.model_dump(mode="json") for m in conversation]}

    @app.post("/api/messages/{user_id}/read")
    def mark_read(user_id: str, user: User = Depends(current_user), relay: Relay = Depends(get_relay)):
        updated = relay.store.mark_read(user_id, user.id)
        return {"success": True, "updated": updated}

    @app.post("/api/messages/{user_id}/upload")
    async def upload_file(
        user_id: str,
        file: UploadFile = File(...),
        user: User = Depends(current_user),
        relay: Relay = Depends(get_relay),
    ):
        major = (file.content_type or "").split("/", 1)[0]
        if major not in UPLOAD_TYPES:
            raise HTTPException(status_code=400, detail="Only image and video uploads are supported")

        # timestamp prefix keeps repeated uploads of the same name apart
        timestamp = utcnow().strftime("%Y%m%d%H%M%S%f")
        safe_filename = f"{timestamp}_{os.path.basename(file.filename or 'upload').replace(' ', '_')}"
        file_path = os.path.join(UPLOAD_DIR, safe_filename)
        await run_in_threadpool(save_upload, file.file, file_path)

        file_url = f"{PUBLIC_URL.rstrip('/')}/uploads/{safe_filename}"
        try:
            message = await run_in_threadpool(
                relay.store.create_message, user.id, user_id, file_url, UPLOAD_TYPES[major].value
            )
        except SQLAlchemyError:
            logger.exception("Failed to store upload from %s to %s", user.id, user_id)
            os.remove(file_path)
            raise HTTPException(status_code=500, detail="Could not store message")
        await relay.deliver(message)
        return {"message": message.model_dump(mode="json")}

    # ----------------- Users -----------------
    @app.get("/api/users/search")
    def search_users(q: str = "", user: User = Depends(current_user), db: Session = Depends(get_db)):
        if not q:
            return {"users": []}
        pattern = f"%{q}%"
        users = db.query(User).filter(
            or_(User.username.like(pattern), User.email.like(pattern), User.phone.like(pattern)),
            User.id != user.id,
        ).limit(20).all()
        return {"users": [user_payload(u) for u in users]}

    @app.put("/api/users/me")
    def update_me(data: UpdateProfileRequest, user: User = Depends(current_user), db: Session = Depends(get_db)):
        for field, value in data.model_dump().items():
            if value:
                setattr(user, field, value)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            raise HTTPException(status_code=400, detail="Update failed. Username or email might be taken.")
        db.refresh(user)
        return {"user": user_payload(user)}

    @app.get("/api/users/{user_id}")
    def get_user(user_id: str, user: User = Depends(current_user), db: Session = Depends(get_db)):
        found = db.get(User, user_id)
        if not found:
            raise HTTPException(status_code=404, detail="User not found")
        return {"user": user_payload(found)}

    # ----------------- Realtime -----------------
    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        await websocket.app.state.relay.serve(websocket)

    @app.get("/health")
    def health(relay: Relay = Depends(get_relay)):
        return {"status": "ok", "connections": len(relay.registry), "events": dict(relay.stats)}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=HOST, port=PORT)
