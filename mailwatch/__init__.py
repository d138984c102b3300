"""Gmail watch manager: OAuth token lifecycle, push-notification watches and
incremental history sync for connected mailboxes."""
