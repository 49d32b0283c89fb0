from fastapi import HTTPException
from .models import GenerationRequest

def require_api_key(req: GenerationRequest):
    if not req.api_key:
        raise HTTPException(status_code=401, detail="API key required")
