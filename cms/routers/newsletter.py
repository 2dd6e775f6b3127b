from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import get_optional_user
from cms.models import User
from cms.responses import api_success
from cms.schemas import NewsletterEmailRequest, NewsletterVerifyRequest
from cms.services import newsletter_service

router = APIRouter(prefix="/api/v1/newsletter", tags=["newsletter"])


@router.post("/subscribe")
async def subscribe(
    data: NewsletterEmailRequest,
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    await newsletter_service.subscribe(db, data.email, user.id if user else None)
    return api_success(None, "Please check your email to confirm your subscription.")


@router.post("/verify")
async def verify(data: NewsletterVerifyRequest, db: AsyncSession = Depends(get_db)):
    subscriber = await newsletter_service.verify_subscription(db, data.email, data.token)
    return api_success(subscriber, "Subscription verified successfully.")


@router.post("/unsubscribe")
async def unsubscribe(data: NewsletterEmailRequest, db: AsyncSession = Depends(get_db)):
    await newsletter_service.unsubscribe(db, data.email)
    return api_success(None, "Please check your email to confirm your unsubscription.")


@router.post("/verify-unsubscribe")
async def verify_unsubscribe(data: NewsletterVerifyRequest, db: AsyncSession = Depends(get_db)):
    subscriber = await newsletter_service.verify_unsubscription(db, data.email, data.token)
    return api_success(subscriber, "You have been unsubscribed successfully.")
