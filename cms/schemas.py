from datetime import datetime
from typing import Literal

from pydantic import BaseModel, EmailStr, Field, model_validator

from cms.config import settings
from cms.enums import ArticleAuthorRole, ArticleStatus, CommentStatus, MediaType, NotificationType

SortDirection = Literal["asc", "desc"]


# --- Shared ---

class PageQuery(BaseModel):
    page: int = Field(1, ge=1)
    per_page: int = Field(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE)


class ReportRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


def _passwords_match(password: str | None, confirmation: str | None) -> None:
    if password is not None and password != confirmation:
        raise ValueError("The password confirmation does not match.")


# --- Auth ---

class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(min_length=8, max_length=255)
    password_confirmation: str

    @model_validator(mode="after")
    def _check_confirmation(self):
        _passwords_match(self.password, self.password_confirmation)
        return self


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RefreshTokenRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    token: str = Field(min_length=1)
    password: str = Field(min_length=8, max_length=255)
    password_confirmation: str

    @model_validator(mode="after")
    def _check_confirmation(self):
        _passwords_match(self.password, self.password_confirmation)
        return self


# --- Users ---

class ProfileFields(BaseModel):
    avatar_url: str | None = Field(None, max_length=2048)
    bio: str | None = Field(None, max_length=1000)
    twitter: str | None = Field(None, max_length=255)
    facebook: str | None = Field(None, max_length=255)
    linkedin: str | None = Field(None, max_length=255)
    github: str | None = Field(None, max_length=255)
    website: str | None = Field(None, max_length=255)


class UpdateProfileRequest(ProfileFields):
    name: str | None = Field(None, min_length=1, max_length=255)
    email: EmailStr | None = None
    current_password: str | None = None
    password: str | None = Field(None, min_length=8, max_length=255)
    password_confirmation: str | None = None

    @model_validator(mode="after")
    def _check_confirmation(self):
        _passwords_match(self.password, self.password_confirmation)
        return self


class UserCreate(ProfileFields):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(min_length=8, max_length=255)
    role_id: int | None = None


class UserUpdate(ProfileFields):
    name: str | None = Field(None, min_length=1, max_length=255)
    email: EmailStr | None = None
    password: str | None = Field(None, min_length=8, max_length=255)
    role_id: int | None = None


class UserFilter(PageQuery):
    search: str | None = None
    role_id: int | None = None
    status: Literal["active", "banned", "blocked"] | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    sort_by: Literal["created_at", "name", "email", "updated_at"] = "created_at"
    sort_direction: SortDirection = "desc"


class AssignRolesRequest(BaseModel):
    role_ids: list[int] = Field(min_length=1)


class SyncPermissionsRequest(BaseModel):
    permission_ids: list[int]


# --- Taxonomy ---

class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str | None = Field(None, max_length=255)
    description: str | None = None
    parent_id: int | None = None


class CategoryUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    slug: str | None = Field(None, max_length=255)
    description: str | None = None
    parent_id: int | None = None


class TagCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    slug: str | None = Field(None, max_length=255)


class TagUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    slug: str | None = Field(None, max_length=255)


# --- Articles ---

class ArticleAuthorInput(BaseModel):
    user_id: int
    role: ArticleAuthorRole = ArticleAuthorRole.CO_AUTHOR


class ArticleCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    slug: str | None = Field(None, max_length=255)
    subtitle: str | None = Field(None, max_length=255)
    excerpt: str | None = None
    content_markdown: str = Field(min_length=1)
    content_html: str | None = None
    featured_media_id: int | None = None
    published_at: datetime | None = None
    meta_title: str | None = Field(None, max_length=255)
    meta_description: str | None = Field(None, max_length=500)
    category_ids: list[int] = []
    tag_ids: list[int] = []
    authors: list[ArticleAuthorInput] = []


class ArticleUpdate(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=255)
    slug: str | None = Field(None, max_length=255)
    subtitle: str | None = Field(None, max_length=255)
    excerpt: str | None = None
    content_markdown: str | None = Field(None, min_length=1)
    content_html: str | None = None
    featured_media_id: int | None = None
    meta_title: str | None = Field(None, max_length=255)
    meta_description: str | None = Field(None, max_length=500)
    category_ids: list[int] | None = None
    tag_ids: list[int] | None = None


class ArticleFilter(PageQuery):
    search: str | None = None
    category_slugs: list[str] = []
    tag_slugs: list[str] = []
    author_id: int | None = None
    published_after: datetime | None = None
    published_before: datetime | None = None
    sort_by: Literal["published_at", "created_at", "title"] = "published_at"
    sort_direction: SortDirection = "desc"


class ArticleManagementFilter(PageQuery):
    search: str | None = None
    status: ArticleStatus | None = None
    author_id: int | None = None
    category_id: int | None = None
    tag_id: int | None = None
    is_featured: bool | None = None
    is_pinned: bool | None = None
    has_reports: bool | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    published_after: datetime | None = None
    published_before: datetime | None = None
    sort_by: Literal[
        "created_at", "updated_at", "published_at", "title", "status", "report_count"
    ] = "created_at"
    sort_direction: SortDirection = "desc"


class ArticleCommentsQuery(PageQuery):
    parent_id: int | None = None
    replies_per_page: int = Field(3, ge=0, le=50)


# --- Comments ---

class CommentCreate(BaseModel):
    content: str = Field(min_length=1, max_length=5000)
    parent_comment_id: int | None = None


class CommentUpdate(BaseModel):
    content: str = Field(min_length=1, max_length=5000)


class CommentFilter(PageQuery):
    status: CommentStatus | None = None
    search: str | None = None
    user_id: int | None = None
    article_id: int | None = None
    parent_comment_id: int | None = None
    approved_by: int | None = None
    has_reports: bool | None = None
    sort_by: Literal["created_at", "updated_at", "report_count", "status"] = "created_at"
    sort_direction: SortDirection = "desc"


class ApproveCommentRequest(BaseModel):
    admin_note: str | None = Field(None, max_length=1000)
    moderator_notes: str | None = Field(None, max_length=1000)


class DeleteCommentRequest(BaseModel):
    reason: str | None = Field(None, max_length=1000)


# --- Media ---

class MediaFilter(PageQuery):
    type: MediaType | None = None
    uploaded_by: int | None = None
    search: str | None = None
    sort_by: Literal["created_at", "name", "size"] = "created_at"
    sort_direction: SortDirection = "desc"


class MediaMetadataUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=255)
    alt_text: str | None = Field(None, max_length=255)
    caption: str | None = None
    description: str | None = None


class UploadMediaData(BaseModel):
    name: str | None = Field(None, max_length=255)
    alt_text: str | None = Field(None, max_length=255)
    caption: str | None = None
    description: str | None = None


# --- Newsletter ---

class NewsletterEmailRequest(BaseModel):
    email: EmailStr


class NewsletterVerifyRequest(BaseModel):
    email: EmailStr
    token: str = Field(min_length=1)


class SubscriberFilter(PageQuery):
    search: str | None = None
    status: Literal["verified", "unverified", "unsubscribed"] | None = None
    subscribed_after: datetime | None = None
    subscribed_before: datetime | None = None
    sort_by: Literal["created_at", "email", "subscribed_at"] = "created_at"
    sort_direction: SortDirection = "desc"


# --- Notifications ---

NotificationAudienceName = Literal["all_users", "administrators", "specific_users"]


class NotificationCreate(BaseModel):
    type: NotificationType
    title: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1, max_length=5000)
    priority: Literal["low", "normal", "high"] = "normal"
    audiences: list[NotificationAudienceName] = Field(min_length=1)
    user_ids: list[int] | None = None

    @model_validator(mode="after")
    def _check_user_ids(self):
        if "specific_users" in self.audiences and not self.user_ids:
            raise ValueError("user_ids are required when targeting specific users.")
        return self


class NotificationFilter(PageQuery):
    search: str | None = None
    type: NotificationType | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    sort_direction: SortDirection = "desc"


class UserNotificationFilter(PageQuery):
    is_read: bool | None = None
    type: NotificationType | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None

