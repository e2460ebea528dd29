from pydantic import BaseModel


class UploadOut(BaseModel):
    key: str
    url: str
    content_type: str
    size: int
