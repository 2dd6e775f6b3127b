# Services package.
#
# Each module exposes a focused set of async functions that encapsulate
# business logic and database access for a single domain aggregate:
#
#   auth_service                 — registration, bearer tokens, password resets
#   user_service                 — admin CRUD, bans/blocks, follows, profiles
#   role_service                 — cached role/permission catalogues
#   article_service              — public article reads, comments, reactions
#   article_management_service   — article listing, create, update
#   article_moderation_service   — status transitions, feature/pin, reports
#   comment_service              — comments and their moderation
#   category_service / tag_service — cached taxonomy CRUD
#   media_service                — uploads and the media library
#   newsletter_service           — double opt-in subscriptions
#   notification_service         — notifications and their fan-out
#   user_notification_service    — a user's own inbox
#   exception_handler            — exception -> JSON envelope + logging
#
# All service functions accept an AsyncSession as their first argument
# so that the router layer controls the transaction boundary via the
# ``get_db`` dependency.  Services flush; they never commit.
