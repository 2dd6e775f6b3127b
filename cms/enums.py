import enum


class ArticleStatus(str, enum.Enum):
    DRAFT = "draft"
    REVIEW = "review"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    ARCHIVED = "archived"
    TRASHED = "trashed"


class CommentStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SPAM = "spam"


class UserRole(str, enum.Enum):
    ADMINISTRATOR = "administrator"
    EDITOR = "editor"
    AUTHOR = "author"
    CONTRIBUTOR = "contributor"
    SUBSCRIBER = "subscriber"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class ArticleAuthorRole(str, enum.Enum):
    MAIN = "main"
    CO_AUTHOR = "co_author"
    CONTRIBUTOR = "contributor"


class ArticleReactionType(str, enum.Enum):
    LIKE = "like"
    DISLIKE = "dislike"

    @property
    def opposite(self) -> "ArticleReactionType":
        return ArticleReactionType.DISLIKE if self is ArticleReactionType.LIKE else ArticleReactionType.LIKE


class NotificationType(str, enum.Enum):
    ARTICLE_PUBLISHED = "article_published"
    NEW_COMMENT = "new_comment"
    NEWSLETTER = "newsletter"
    SYSTEM_ALERT = "system_alert"


class NotificationAudienceType(str, enum.Enum):
    ALL = "all"
    ROLE = "role"
    USER = "user"


class MediaType(str, enum.Enum):
    IMAGE = "image"
    VIDEO = "video"
    DOCUMENT = "document"
    OTHER = "other"


class TokenAbility(str, enum.Enum):
    ACCESS_API = "access-api"
    REFRESH_TOKEN = "refresh-token"
