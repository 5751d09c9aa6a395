from fastapi import APIRouter, Depends

from database import get_db
from models.survey import SurveySubmit
from utils.mongo import serialize_doc
from utils.security import get_current_user
from utils.survey_scoring import submit_survey_response

router = APIRouter(prefix="/api/surveys", tags=["Surveys"])


@router.post("/responses")
async def submit(data: SurveySubmit, user=Depends(get_current_user), db=Depends(get_db)):
    response = await submit_survey_response(
        db,
        user,
        data.order_id,
        data.category_id,
        data.answers,
        data.comments,
    )
    return serialize_doc(response)
