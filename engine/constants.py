"""Centralized constants for resources, cache keys and query TTLs.

Single source of truth for resource names and cache key templates, so the
queries that fill a cache entry and the mutations that invalidate it agree.
"""

# =============================================================================
# RESOURCES
# =============================================================================

STORIES = 'stories'
STORY_VIEWS = 'story_views'
PROFILES = 'profiles'
NOTIFICATIONS = 'notifications'

# =============================================================================
# CACHE KEYS
# =============================================================================

STORIES_WITH_PROFILES_KEY = 'stories_with_profiles:{user_id}'
VIEWED_STORIES_KEY = 'viewed_stories:{user_id}'
USER_PROFILE_KEY = 'user_profile:{user_id}'
STORY_KEY = 'story:{story_id}'
NOTIFICATIONS_KEY = 'notifications:{user_id}'

# =============================================================================
# TTLs (seconds)
# =============================================================================

STORIES_TTL = 30.0
VIEWED_STORIES_TTL = 60.0
PROFILE_TTL = 300.0

# Progressive delays between read retries
READ_RETRY_DELAYS = (1.0, 2.0, 5.0)

# =============================================================================
# REMOTE PROCEDURES
# =============================================================================

INCREMENT_STORY_VIEWS = 'increment_story_views'


def stories_key(user_id: str) -> str:
    return STORIES_WITH_PROFILES_KEY.format(user_id=user_id)


def viewed_stories_key(user_id: str) -> str:
    return VIEWED_STORIES_KEY.format(user_id=user_id)


def user_profile_key(user_id: str) -> str:
    return USER_PROFILE_KEY.format(user_id=user_id)


def story_key(story_id: str) -> str:
    return STORY_KEY.format(story_id=story_id)


def notifications_key(user_id: str) -> str:
    return NOTIFICATIONS_KEY.format(user_id=user_id)
