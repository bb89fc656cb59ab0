ORDER_CONFIRMED_CHANNEL = "allocation:order_confirmed:v1"
PICKING_STARTED_CHANNEL = "allocation:picking_started:v1"
BATCH_ALLOCATED_CHANNEL = "allocation:batch_allocated:v1"
ALLOCATION_PICKED_CHANNEL = "allocation:allocation_picked:v1"
ALLOCATION_CANCELLED_CHANNEL = "allocation:allocation_cancelled:v1"
ORDER_DISPATCHED_CHANNEL = "allocation:order_dispatched:v1"
ORDER_VOIDED_CHANNEL = "allocation:order_voided:v1"
CACHE_INVALIDATED_CHANNEL = "allocation:cache_invalidated:v1"

PRODUCT_ATS_KEY = "allocation:product_ats:{product_id}"
