"""Tests for QA review and client approval of finished sections."""

import pytest

from src.models import OrderItem, OrderItemStatus, OrderStatus, SectionStatus, WorkerRole
from src.services import catalog_service, client_approval_service, order_service, qa_service
from src.services.database import session_scope
from src.services.exceptions import NotFoundError, StateConflictError, ValidationError

VIDEO = "https://youtu.be/abcdef123"


@pytest.fixture
def qa_item(driver, ready_stock_product):
    """Ready-stock item whose shirt and dupatta are waiting for QA."""
    item_id = driver.new_item(product_id=ready_stock_product)
    driver.packet_approved(item_id, is_ready_stock=True)
    return item_id


@pytest.fixture
def passed_item(qa_item):
    for section in ("shirt", "dupatta"):
        qa_service.add_qa_evidence(qa_item, section, VIDEO)
    return qa_item


def _statuses(order_item_id):
    item = order_service.get_order_item(order_item_id)
    return {section.value: status for section, status in item.section_status_map().items()}


class TestVideoUrls:
    @pytest.mark.parametrize(
        "url",
        [
            "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://m.youtube.com/watch?v=dQw4w9WgXcQ",
            "https://youtube.com/shorts/abc123xyz",
            "https://youtu.be/abcdef123",
            "https://vimeo.com/76979871",
        ],
    )
    def test_accepted(self, url):
        assert qa_service.is_accepted_video_url(url)

    @pytest.mark.parametrize(
        "url",
        [
            None,
            "",
            "https://example.com/video.mp4",
            "ftp://youtu.be/abcdef123",
            "https://vimeo.com/channel",
            "youtube.com/watch?v=dQw4w9WgXcQ",
        ],
    )
    def test_rejected(self, url):
        assert not qa_service.is_accepted_video_url(url)


class TestQaReview:
    """Tests for add_qa_evidence and reject_qa_section."""

    def test_ready_stock_item_waits_for_qa(self, qa_item):
        item = order_service.get_order_item(qa_item)
        assert item.is_ready_stock
        assert item.status == OrderItemStatus.QUALITY_ASSURANCE
        assert set(_statuses(qa_item).values()) == {SectionStatus.QA_PENDING}

    def test_pass_records_evidence(self, workers, qa_item):
        item = qa_service.add_qa_evidence(
            qa_item, "Shirt", VIDEO, notes="Neckline clean", user_id=workers.qa
        )

        record = item.section_statuses["shirt"]
        assert record["status"] == SectionStatus.READY_FOR_CLIENT_APPROVAL.value
        assert record["qa_data"]["current_round"] == 1
        (review,) = record["qa_data"]["rounds"]
        assert review["result"] == "APPROVED"
        assert review["video_url"] == VIDEO
        assert review["reviewed_by"] == workers.qa
        # Only one section passed, so the item is still in QA
        assert item.status == OrderItemStatus.QUALITY_ASSURANCE

    def test_all_sections_passed(self, passed_item):
        item = order_service.get_order_item(passed_item)
        assert item.status == OrderItemStatus.READY_FOR_CLIENT_APPROVAL

    def test_bad_video_url(self, qa_item):
        with pytest.raises(ValidationError):
            qa_service.add_qa_evidence(qa_item, "shirt", "https://example.com/clip.mp4")
        assert _statuses(qa_item)["shirt"] == SectionStatus.QA_PENDING

    def test_pass_requires_qa_pending(self, passed_item):
        with pytest.raises(StateConflictError) as exc_info:
            qa_service.add_qa_evidence(passed_item, "shirt", VIDEO)
        assert exc_info.value.required_statuses == ["QA_PENDING"]

    def test_reject_advances_round(self, qa_item):
        item = qa_service.reject_qa_section(
            qa_item, "dupatta", "Border uneven", reason_code="EMBROIDERY_DEFECT"
        )

        record = item.section_statuses["dupatta"]
        assert record["status"] == SectionStatus.QA_REJECTED.value
        assert record["qa_data"]["current_round"] == 2
        (review,) = record["qa_data"]["rounds"]
        assert review == {
            "round": 1,
            "result": "REJECTED",
            "reason_code": "EMBROIDERY_DEFECT",
            "notes": "Border uneven",
            "video_url": None,
            "reviewed_by": None,
            "reviewed_at": review["reviewed_at"],
        }

    def test_reject_validation_collects_errors(self, qa_item):
        with pytest.raises(ValidationError) as exc_info:
            qa_service.reject_qa_section(
                qa_item, "shirt", "", reason_code="UGLY", video_url="not a url"
            )
        assert len(exc_info.value.errors) == 3

    def test_unknown_section(self, qa_item):
        with pytest.raises(NotFoundError):
            qa_service.add_qa_evidence(qa_item, "veil", VIDEO)


class TestClientApproval:
    """Tests for sending sections to the client and recording approval."""

    def test_partial_send_keeps_item_ready(self, passed_item):
        item = client_approval_service.send_section_to_client(passed_item, "shirt")

        assert item.section_statuses["shirt"]["status"] == SectionStatus.AWAITING_CLIENT_APPROVAL.value
        assert item.status == OrderItemStatus.READY_FOR_CLIENT_APPROVAL

    def test_send_all(self, workers, passed_item):
        item = client_approval_service.send_all_to_client(passed_item, user_id=workers.qa)

        assert item.status == OrderItemStatus.AWAITING_CLIENT_APPROVAL
        assert item.section_statuses["dupatta"]["sent_to_client_by"] == workers.qa

    def test_send_all_with_nothing_ready(self, qa_item):
        with pytest.raises(StateConflictError) as exc_info:
            client_approval_service.send_all_to_client(qa_item)
        assert exc_info.value.required_statuses == ["READY_FOR_CLIENT_APPROVAL"]

    def test_approve_before_sending(self, passed_item):
        with pytest.raises(StateConflictError):
            client_approval_service.approve_section(passed_item, "shirt")

    def test_approve_one_section(self, passed_item):
        client_approval_service.send_all_to_client(passed_item)

        item = client_approval_service.approve_section(passed_item, "shirt", notes="Love it")

        assert item.section_statuses["shirt"]["client_notes"] == "Love it"
        assert item.status == OrderItemStatus.AWAITING_CLIENT_APPROVAL

    def test_approving_everything_readies_order(self, passed_item):
        client_approval_service.send_all_to_client(passed_item)

        item = client_approval_service.approve_all_sections(passed_item)

        assert item.status == OrderItemStatus.READY_FOR_DISPATCH
        assert set(_statuses(passed_item).values()) == {SectionStatus.CLIENT_APPROVED}
        order = order_service.get_order(item.order_id)
        assert order.status == OrderStatus.READY_FOR_DISPATCH


NEW_VIDEO = "https://vimeo.com/76979871"


class TestReVideo:
    """Sales asks QA to film sections again while the client decides."""

    @pytest.fixture
    def sent_item(self, passed_item):
        client_approval_service.send_all_to_client(passed_item)
        return passed_item

    @pytest.fixture
    def sales(self, test_db):
        return catalog_service.create_worker("Sara", WorkerRole.SALES).id

    def test_request_is_listed_for_qa(self, sales, sent_item):
        item = client_approval_service.request_re_video(
            sent_item, [{"name": "shirt", "notes": "Show the embroidery up close"}], requested_by=sales
        )

        assert item.re_video_request["sections"] == [
            {"name": "shirt", "notes": "Show the embroidery up close"}
        ]
        assert item.status == OrderItemStatus.AWAITING_CLIENT_APPROVAL
        (request,) = qa_service.list_re_video_requests()
        assert request["order_item_id"] == sent_item
        assert request["order_number"] == "ORD-0001"
        assert request["requested_by_name"] == "Sara"
        assert request["previous_videos"] == {"shirt": VIDEO}

    def test_requests_listed_oldest_first(self, driver, ready_stock_product, sent_item):
        other = driver.new_item(product_id=ready_stock_product)
        driver.packet_approved(other, is_ready_stock=True)
        for section in ("shirt", "dupatta"):
            qa_service.add_qa_evidence(other, section, VIDEO)
        client_approval_service.send_all_to_client(other)

        client_approval_service.request_re_video(sent_item, [{"name": "shirt", "notes": "closer"}])
        client_approval_service.request_re_video(other, [{"name": "dupatta", "notes": "brighter"}])
        # Backdate the later item's request so it is the older one
        with session_scope() as session:
            item = session.get(OrderItem, other)
            item.re_video_request = dict(item.re_video_request, requested_at="2026-01-01T09:00:00")

        assert [r["order_item_id"] for r in qa_service.list_re_video_requests()] == [
            other,
            sent_item,
        ]

    def test_upload_fulfils_request(self, workers, sent_item):
        client_approval_service.request_re_video(
            sent_item, [{"name": "shirt", "notes": "Show the embroidery"}]
        )

        item = qa_service.upload_re_video(sent_item, NEW_VIDEO, user_id=workers.qa)

        assert item.re_video_request is None
        record = item.section_statuses["shirt"]
        assert record["status"] == SectionStatus.AWAITING_CLIENT_APPROVAL.value
        assert qa_service.current_video_url(record) == NEW_VIDEO
        (replaced,) = record["video_history"]
        assert replaced["version"] == 1
        assert replaced["video_url"] == VIDEO
        assert replaced["request_notes"] == "Show the embroidery"
        assert record["qa_data"]["rounds"][-1]["result"] == "RE_VIDEO"
        # Sections not named in the request keep their video
        assert qa_service.current_video_url(item.section_statuses["dupatta"]) == VIDEO
        assert qa_service.list_re_video_requests() == []
        timeline = order_service.get_item_timeline(sent_item)
        assert timeline[-1]["action"] == "New video uploaded, re-video request fulfilled"

    def test_client_can_approve_after_new_video(self, sent_item):
        client_approval_service.request_re_video(sent_item, [{"name": "shirt", "notes": "closer"}])
        qa_service.upload_re_video(sent_item, NEW_VIDEO)

        item = client_approval_service.approve_all_sections(sent_item)

        assert item.status == OrderItemStatus.READY_FOR_DISPATCH

    def test_upload_without_request(self, sent_item):
        with pytest.raises(ValidationError) as exc_info:
            qa_service.upload_re_video(sent_item, NEW_VIDEO)
        assert "No re-video request" in str(exc_info.value)

    def test_upload_needs_video_url(self, sent_item):
        client_approval_service.request_re_video(sent_item, [{"name": "shirt", "notes": "closer"}])
        with pytest.raises(ValidationError):
            qa_service.upload_re_video(sent_item, "https://example.com/clip.mp4")

    @pytest.mark.parametrize(
        "sections",
        [[], [{"name": "shirt", "notes": "  "}], [{"name": "shirt"}]],
    )
    def test_request_validation(self, sent_item, sections):
        with pytest.raises(ValidationError):
            client_approval_service.request_re_video(sent_item, sections)

    def test_only_one_open_request(self, sent_item):
        client_approval_service.request_re_video(sent_item, [{"name": "shirt", "notes": "closer"}])
        with pytest.raises(ValidationError):
            client_approval_service.request_re_video(
                sent_item, [{"name": "dupatta", "notes": "brighter"}]
            )

    def test_request_needs_section_with_client(self, passed_item):
        with pytest.raises(StateConflictError) as exc_info:
            client_approval_service.request_re_video(
                passed_item, [{"name": "shirt", "notes": "closer"}]
            )
        assert exc_info.value.required_statuses == ["AWAITING_CLIENT_APPROVAL"]
