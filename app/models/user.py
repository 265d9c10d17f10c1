from pydantic import BaseModel
from typing import Optional

# Token Schemas
class TokenData(BaseModel):
    user_id: Optional[str] = None
