import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from pydantic import BaseModel, EmailStr

import config
from assembler import Envelope, serialize
from auth import authenticate, create_access_token, decode_subject
from database import get_client, get_database
from errors import StorageError
from logging_config import setup_logging
from orphans import OrphanQueue
from registry import DELETED, Registry, build_registry
from service import ResourceService, build_services
from storage import MemoryStorage, MongoStorage

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


# Pydantic models
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


# Helpers

def respond(envelope: Envelope) -> JSONResponse:
    return JSONResponse(status_code=envelope.status_code, content=jsonable_encoder(envelope.body))


def get_storage(request: Request):
    return request.app.state.storage


# Dependency: actor identity from the bearer token
def get_current_actor(request: Request, token: str = Depends(oauth2_scheme)) -> str:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    user_id = decode_subject(token)
    if user_id is None or not ObjectId.is_valid(user_id):
        raise credentials_exception

    users = request.app.state.registry.get("user").collection
    try:
        user = get_storage(request).find_by_id(users, ObjectId(user_id))
    except StorageError:
        raise HTTPException(status_code=503, detail="Database not available")
    if not user or user.get("status") == DELETED:
        raise credentials_exception
    return user_id


def resource_router(name: str) -> APIRouter:
    router = APIRouter(prefix=f"/{name}", tags=[name])

    def service(request: Request) -> ResourceService:
        return request.app.state.services[name]

    @router.get("")
    def list_resources(request: Request, svc: ResourceService = Depends(service)):
        return respond(svc.list(request.query_params))

    @router.get("/search/{term}")
    def search_resources(term: str, request: Request, svc: ResourceService = Depends(service)):
        return respond(svc.search(term, request.query_params))

    @router.get("/{id}")
    def get_resource(id: str, svc: ResourceService = Depends(service)):
        return respond(svc.get_by_id(id))

    @router.post("")
    def create_resource(
        payload: Any = Body(...),
        actor: str = Depends(get_current_actor),
        svc: ResourceService = Depends(service),
    ):
        return respond(svc.create(payload, actor=actor))

    @router.put("/toggleStatus/{id}")
    def toggle_resource(id: str, actor: str = Depends(get_current_actor), svc: ResourceService = Depends(service)):
        return respond(svc.toggle_status(id))

    @router.put("/{id}")
    def update_resource(
        id: str,
        payload: Any = Body(...),
        actor: str = Depends(get_current_actor),
        svc: ResourceService = Depends(service),
    ):
        return respond(svc.update(id, payload))

    @router.delete("/{id}")
    def delete_resource(id: str, actor: str = Depends(get_current_actor), svc: ResourceService = Depends(service)):
        return respond(svc.soft_delete(id))

    return router


def ensure_indexes(registry: Registry, storage) -> None:
    """Back every declared unique field with a unique index."""
    for schema in registry:
        for field in schema.unique_fields:
            try:
                storage.ensure_unique_index(schema.collection, field)
            except StorageError:
                # the app still starts; /test reports the database state
                logger.exception("could not create unique index on %s.%s", schema.collection, field)


def create_app(storage=None, orphans=None, registry: Optional[Registry] = None) -> FastAPI:
    registry = registry or build_registry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        client = None
        store = storage
        if store is None:
            if config.STORAGE_BACKEND == "memory":
                store = MemoryStorage()
            else:
                client = get_client()
                store = MongoStorage(get_database(client))
        ensure_indexes(registry, store)
        app.state.storage = store
        app.state.services = build_services(registry, store, orphans or OrphanQueue(store))
        logger.info("serving %s on %s storage", ", ".join(registry.names()), type(store).__name__)
        try:
            yield
        finally:
            if client is not None:
                client.close()

    # App setup
    app = FastAPI(title="Catalog API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.registry = registry

    # Routes
    @app.get("/")
    def root():
        return {"message": "Catalog API", "resources": list(registry.names())}

    @app.get("/test")
    def test_database(request: Request):
        try:
            collections = get_storage(request).ping()
            return {"backend": "ok", "database": "ok", "collections": collections}
        except StorageError as e:
            return {"backend": "ok", "database": f"error: {e.detail[:80]}"}

    # Auth
    @app.post("/auth/login", response_model=TokenResponse)
    def login(payload: LoginRequest, request: Request):
        users = registry.get("user")
        try:
            user = authenticate(get_storage(request), users.collection, payload.email, payload.password)
        except StorageError:
            raise HTTPException(status_code=503, detail="Database not available")
        if not user:
            raise HTTPException(status_code=400, detail="Invalid email or password")
        access_token = create_access_token({"sub": str(user["_id"])})
        user_out = serialize({k: v for k, v in user.items() if k not in users.hidden_fields})
        return TokenResponse(access_token=access_token, user=user_out)

    # Resources
    for name in registry.names():
        app.include_router(resource_router(name))

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
