from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from aidispatch.deps import get_current_user
from aidispatch.models.user import User
from aidispatch.services import api_tokens as tokens_service

router = APIRouter()


class StoreTokenRequest(BaseModel):
    provider: Literal["openai", "anthropic"]
    token: str = Field(min_length=1, max_length=500)
    display_name: str | None = Field(default=None, max_length=255)


class UpdateTokenRequest(BaseModel):
    token: str = Field(min_length=1, max_length=500)
    display_name: str | None = Field(default=None, max_length=255)


@router.get("")
async def list_api_tokens(user: User = Depends(get_current_user)):
    tokens = await tokens_service.list_tokens(str(user.id))
    return {"tokens": [tokens_service.token_to_public(t) for t in tokens]}


@router.post("", status_code=201)
async def store_api_token(body: StoreTokenRequest, user: User = Depends(get_current_user)):
    doc = await tokens_service.store_token(str(user.id), body.provider, body.token, body.display_name)
    return tokens_service.token_to_public(doc)


@router.put("/{token_id}")
async def update_api_token(token_id: str, body: UpdateTokenRequest, user: User = Depends(get_current_user)):
    doc = await tokens_service.update_token(str(user.id), token_id, body.token, body.display_name)
    return tokens_service.token_to_public(doc)


@router.post("/{token_id}/toggle")
async def toggle_api_token(token_id: str, user: User = Depends(get_current_user)):
    doc = await tokens_service.toggle_token(str(user.id), token_id)
    return tokens_service.token_to_public(doc)


@router.delete("/{token_id}", status_code=204)
async def delete_api_token(token_id: str, user: User = Depends(get_current_user)):
    await tokens_service.delete_token(str(user.id), token_id)
