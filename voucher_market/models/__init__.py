from voucher_market.models.user import User
from voucher_market.models.venue import Venue, VenueProfile
from voucher_market.models.deal import Deal
from voucher_market.models.payment import Payment
from voucher_market.models.voucher import Voucher
from voucher_market.models.audit_log import AuditLog
