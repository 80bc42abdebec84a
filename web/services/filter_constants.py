from __future__ import annotations


# Filters with an id at or above this value were subscribed by the user.
CUSTOM_FILTERS_START_ID = 1000

SEARCH_AND_SELF_PROMO_FILTER_ID = 10

# Filter groups.
CUSTOM_FILTERS_GROUP_ID = 0
AD_BLOCKING_ID = 1
PRIVACY_ID = 2
SOCIAL_ID = 3
ANNOYANCES_ID = 4
SECURITY_ID = 5
OTHER_ID = 6
LANGUAGE_SPECIFIC_ID = 7

RECOMMENDED_TAG_ID = 10

RESET_VERSION = "0.0.0.0"

# Scheduler delays, milliseconds.
UPDATE_FILTERS_DELAY_MS = 5 * 60 * 1000
RELOAD_FILTERS_DELAY_MS = 15 * 1000
ENABLED_FILTERS_SKIP_TIMEOUT_MS = 5 * 60 * 1000

FILTERS_UPDATE_LAST_CHECK_KEY = "filters-update-last-check"


# Event kinds published on the notifier.
FILTER_GROUP_ENABLE_DISABLE = "filter.group.enable.disable"
FILTER_ENABLE_DISABLE = "filter.enable.disable"
FILTER_ADD_REMOVE = "filter.add.remove"
START_DOWNLOAD_FILTER = "filter.download.start"
SUCCESS_DOWNLOAD_FILTER = "filter.download.success"
ERROR_DOWNLOAD_FILTER = "filter.download.error"
UPDATE_FILTER_RULES = "filter.rules.update"
UPDATE_FILTERS_SHOW_POPUP = "filters.update.show.popup"
