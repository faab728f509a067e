from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    email: Optional[str]
    full_name: Optional[str]
