"""
Tests for the stock transfer state machine.
"""
import pytest

from field_entities import MediaRef
from field_errors import FieldValidationError, FrmNetworkError, TransferTransitionError
import services_transfer_sequencer as transfers
from services_transfer_sequencer import derive_check_status

TRANSFER_ID = 'ST-0001'


@pytest.fixture
def loading_ctx(ctx, backend):
    backend.add_transfer(TRANSFER_ID, item_count=5)
    transfers.start_loading(ctx, TRANSFER_ID)
    return ctx


def _check_all(ctx, products, qty=10):
    for product in products:
        transfers.record_item_check(ctx, TRANSFER_ID, product, verified_qty=qty)


class TestDeriveCheckStatus:

    def test_nothing_counted_is_pending(self):
        assert derive_check_status(10, 0, 0, 0) == 'pending'

    def test_short_count_is_partial(self):
        assert derive_check_status(10, 6, 0, 0) == 'partial'

    def test_full_count_verified(self):
        assert derive_check_status(10, 10, 0, 0) == 'verified'

    def test_damage_wins_over_missing(self):
        assert derive_check_status(10, 7, 2, 1) == 'damaged'

    def test_missing(self):
        assert derive_check_status(10, 8, 0, 2) == 'missing'


class TestLoading:

    def test_start_loading(self, ctx, backend):
        backend.add_transfer(TRANSFER_ID)
        transfer = transfers.start_loading(ctx, TRANSFER_ID)
        assert transfer.status == 'loading'

    def test_complete_loading_waits_for_every_item(self, loading_ctx, backend):
        """Four verified and one pending item blocks loading; verifying the fifth lets it through"""
        _check_all(loading_ctx, ['ITEM-1', 'ITEM-2', 'ITEM-3', 'ITEM-4'])

        with pytest.raises(TransferTransitionError) as exc:
            transfers.complete_loading(loading_ctx, TRANSFER_ID)
        assert exc.value.reasons == ['Item 5 is pending']
        assert backend.calls_to('complete_loading') == []

        _check_all(loading_ctx, ['ITEM-5'])
        transfer = transfers.complete_loading(loading_ctx, TRANSFER_ID)
        assert transfer.status == 'in_transit'

    def test_partial_item_blocks_loading(self, loading_ctx):
        _check_all(loading_ctx, ['ITEM-1', 'ITEM-2', 'ITEM-3', 'ITEM-4'])
        transfers.record_item_check(loading_ctx, TRANSFER_ID, 'ITEM-5', verified_qty=4)
        with pytest.raises(TransferTransitionError):
            transfers.complete_loading(loading_ctx, TRANSFER_ID)

    def test_damaged_items_still_count_as_checked(self, loading_ctx):
        _check_all(loading_ctx, ['ITEM-1', 'ITEM-2', 'ITEM-3', 'ITEM-4'])
        transfers.record_item_check(loading_ctx, TRANSFER_ID, 'ITEM-5', verified_qty=8, damaged_qty=2)
        assert transfers.complete_loading(loading_ctx, TRANSFER_ID).status == 'in_transit'

    def test_over_count_is_rejected(self, loading_ctx, backend):
        with pytest.raises(FieldValidationError):
            transfers.record_item_check(loading_ctx, TRANSFER_ID, 'ITEM-1', verified_qty=9, missing_qty=2)
        assert backend.calls_to('update_item_check') == []

    def test_negative_quantity_is_rejected(self, loading_ctx):
        with pytest.raises(FieldValidationError):
            transfers.record_item_check(loading_ctx, TRANSFER_ID, 'ITEM-1', verified_qty=-1)

    def test_unknown_product_is_rejected(self, loading_ctx):
        with pytest.raises(FieldValidationError):
            transfers.record_item_check(loading_ctx, TRANSFER_ID, 'ITEM-99', verified_qty=1)

    def test_rejected_item(self, loading_ctx):
        transfer = transfers.record_item_check(loading_ctx, TRANSFER_ID, 'ITEM-1', rejected=True)
        assert transfer.item('ITEM-1').check_status == 'rejected'

    def test_verify_all_items(self, loading_ctx):
        transfer = transfers.verify_all_items(loading_ctx, TRANSFER_ID)
        assert transfers.loading_progress(transfer)['percentage'] == 100.0
        assert 'complete_loading' in transfers.allowed_transfer_actions(transfer)

    def test_items_cannot_be_checked_before_loading(self, ctx, backend):
        backend.add_transfer(TRANSFER_ID)
        with pytest.raises(TransferTransitionError):
            transfers.verify_all_items(ctx, TRANSFER_ID)


class TestTransitAndHandoff:

    @pytest.fixture
    def arrived_ctx(self, loading_ctx):
        transfers.verify_all_items(loading_ctx, TRANSFER_ID)
        transfers.complete_loading(loading_ctx, TRANSFER_ID)
        transfers.arrive_at_destination(loading_ctx, TRANSFER_ID)
        return loading_ctx

    def test_arrival_sends_location(self, arrived_ctx, backend):
        call = backend.calls_to('arrive_at_destination')[0]
        assert call[2:] == (35.1856, 33.3823)
        assert arrived_ctx.transfers[TRANSFER_ID].status == 'arrived'

    def test_handoff_requires_receiver(self, arrived_ctx):
        with pytest.raises(FieldValidationError):
            transfers.complete_handoff(arrived_ctx, TRANSFER_ID, '  ')

    def test_handoff_uploads_photo_first(self, arrived_ctx, backend, store):
        transfer = transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.',
                                              photo=('handoff.jpg', b'jpeg-bytes'), notes='All good')
        assert transfer.status == 'completed'
        assert transfer.received_by == 'Maria K.'
        assert transfer.handoff_photo == '/files/handoff.jpg'
        ops = [c[0] for c in backend.calls]
        assert ops.index('upload_media') < ops.index('complete_handoff')
        assert store.load(TRANSFER_ID) is None

    def test_retried_handoff_reuses_uploaded_photo(self, arrived_ctx, backend):
        backend.fail['complete_handoff'] = FrmNetworkError('timeout')
        with pytest.raises(FrmNetworkError):
            transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.', photo=('handoff.jpg', b'jpeg'))

        del backend.fail['complete_handoff']
        transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.', photo=('handoff.jpg', b'jpeg'))
        assert backend.uploads == 1

    def test_retried_handoff_with_new_photo_uploads_it(self, arrived_ctx, backend):
        backend.fail['complete_handoff'] = FrmNetworkError('timeout')
        with pytest.raises(FrmNetworkError):
            transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.', photo=('blurry.jpg', b'first'))

        del backend.fail['complete_handoff']
        transfer = transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.',
                                              photo=('sharp.jpg', b'second'))
        assert backend.uploads == 2
        assert transfer.handoff_photo == '/files/sharp.jpg'

    def test_retried_handoff_without_photo_keeps_upload(self, arrived_ctx, backend):
        backend.fail['complete_handoff'] = FrmNetworkError('timeout')
        with pytest.raises(FrmNetworkError):
            transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.', photo=('handoff.jpg', b'jpeg'))

        del backend.fail['complete_handoff']
        transfer = transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.')
        assert backend.uploads == 1
        assert transfer.handoff_photo == '/files/handoff.jpg'

    def test_handoff_with_existing_media(self, arrived_ctx, backend):
        transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.',
                                   photo=MediaRef(id='F-7', url='/files/seven.jpg'))
        assert backend.uploads == 0
        assert backend.transfers[TRANSFER_ID]['handoff_photo'] == '/files/seven.jpg'

    def test_deliveries_ready_after_completion(self, arrived_ctx):
        transfer = transfers.complete_handoff(arrived_ctx, TRANSFER_ID, 'Maria K.')
        assert all(d['ready'] for d in transfers.delivery_readiness(transfer))

    def test_cannot_skip_arrival(self, loading_ctx):
        transfers.verify_all_items(loading_ctx, TRANSFER_ID)
        transfers.complete_loading(loading_ctx, TRANSFER_ID)
        with pytest.raises(TransferTransitionError):
            transfers.complete_handoff(loading_ctx, TRANSFER_ID, 'Maria K.')


class TestReturn:

    def test_return_requires_reason(self, loading_ctx):
        with pytest.raises(FieldValidationError):
            transfers.return_transfer(loading_ctx, TRANSFER_ID, '')

    def test_return_from_loading(self, loading_ctx):
        transfer = transfers.return_transfer(loading_ctx, TRANSFER_ID, 'Vehicle broke down')
        assert transfer.status == 'returned'
        assert transfers.allowed_transfer_actions(transfer) == []

    def test_return_not_allowed_from_pending(self, ctx, backend):
        backend.add_transfer(TRANSFER_ID)
        with pytest.raises(TransferTransitionError):
            transfers.return_transfer(ctx, TRANSFER_ID, 'Not needed')

    def test_returned_is_irreversible(self, loading_ctx):
        transfers.return_transfer(loading_ctx, TRANSFER_ID, 'Vehicle broke down')
        with pytest.raises(TransferTransitionError):
            transfers.start_loading(loading_ctx, TRANSFER_ID)
        with pytest.raises(TransferTransitionError):
            transfers.return_transfer(loading_ctx, TRANSFER_ID, 'Again')


class TestAllowedActions:

    def test_actions_by_status(self, ctx, backend):
        backend.add_transfer(TRANSFER_ID)
        transfer = transfers.load_transfer(ctx, TRANSFER_ID)
        assert transfers.allowed_transfer_actions(transfer) == ['start_loading']

        transfer = transfers.start_loading(ctx, TRANSFER_ID)
        assert transfers.allowed_transfer_actions(transfer) == ['record_item_check', 'verify_all_items', 'return']
