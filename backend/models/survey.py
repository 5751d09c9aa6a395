from pydantic import BaseModel, Field
from typing import Dict, Literal, Optional

QuestionType = Literal["rating", "scale", "yesno"]


class SurveyQuestion(BaseModel):
    text: str = ""
    type: QuestionType
    weight: float = 1.0


class SurveySubmit(BaseModel):
    order_id: str
    category_id: str
    answers: Dict[str, float] = Field(..., min_length=1)
    comments: Optional[str] = Field(None, max_length=2000)
