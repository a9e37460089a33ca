PURGE_PROGRESS_KEY = "purge_progress"
LAST_SCHEDULED_TASK_KEY = "last_scheduled_task"
ROW_COUNT_BY_ROOM_KEY = "state_groups_state_row_count_by_room"

TASK_PURGE = "purge"
TASK_SCAN = "scan"

NO_ROOM_NAME = "no name found"
