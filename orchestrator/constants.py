# Seconds FreeSWITCH waits for the agent leg before giving up
ORIGINATE_TIMEOUT = 30

# Extra seconds added to the wrap-up timer so an explicit wrap-up wins the race
WRAP_UP_GRACE_SECONDS = 1

# Delay before the next contact is auto-requested after wrap-up
AUTO_REQUEST_DELAY_SECONDS = 0.1

# Separator used when building composite deduplication keys
DEDUP_KEY_SEPARATOR = '||'

# Upper bound on one next-contact request for a single agent
DISTRIBUTION_LOCK_TIMEOUT = 30
