from datetime import datetime
from typing import Optional, TypedDict


class ProfileDocument(TypedDict, total=False):

    _id: str
    email: str
    full_name: Optional[str]
    avatar_url: Optional[str]
    # "student" | "src" | "admin"
    role: str
    src_department: Optional[str]
    department: Optional[str]
    year_level: Optional[int]
    created_at: datetime
