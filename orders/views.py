import json
from functools import wraps

from django.contrib.auth.decorators import login_required
from django.core.paginator import Paginator
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.utils.dateparse import parse_date
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .exceptions import OrderError
from .models import Order
from .serializers import order_to_dict
from .services import cancel_order, update_order_status
from .status import OrderStatus

MAX_NOTE_LENGTH = 500
PAGE_SIZE = 15


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8") or "{}")
    except Exception: return None


def staff_required(view):
    """Order management is for staff only; the role check lives here, not in the aggregate."""
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return JsonResponse({"message": "Authentication required."}, status=401)
        if not request.user.is_staff:
            return JsonResponse({"message": "Forbidden."}, status=403)
        return view(request, *args, **kwargs)
    return wrapper


@require_GET
@staff_required
def order_list_view(request):
    status = request.GET.get("status")
    if status and status not in OrderStatus.values:
        return JsonResponse({"message": f"Unknown status '{status}'."}, status=400)

    qs = Order.objects.select_related("customer").prefetch_related("items")
    if status:
        qs = qs.filter(status=status)
    for param, lookup in (("from_date", "created_at__date__gte"), ("to_date", "created_at__date__lte")):
        raw = request.GET.get(param)
        if raw:
            day = parse_date(raw)
            if day is None:
                return JsonResponse({"message": f"Invalid {param}."}, status=400)
            qs = qs.filter(**{lookup: day})

    page = Paginator(qs.order_by("-created_at"), PAGE_SIZE).get_page(request.GET.get("page"))
    return JsonResponse({
        "orders": [order_to_dict(o) for o in page.object_list],
        "page": page.number,
        "num_pages": page.paginator.num_pages,
        "total": page.paginator.count,
        "available_statuses": OrderStatus.values,
    })


@require_GET
@staff_required
def order_detail_view(request, pk: int):
    order = get_object_or_404(Order, pk=pk)
    return JsonResponse({
        "order": order_to_dict(order, with_history=True),
        "available_transitions": sorted(s.value for s in order.allowed_transitions()),
    })


@csrf_exempt
@require_POST
@staff_required
def order_update_status_view(request, pk: int):
    body = _json_body(request)
    if body is None:
        return JsonResponse({"message": "Invalid JSON body"}, status=400)
    status = body.get("status")
    note = body.get("note") or body.get("notes") or ""
    if status not in OrderStatus.values:
        return JsonResponse({"message": f"status must be one of: {', '.join(OrderStatus.values)}"}, status=400)
    if len(note) > MAX_NOTE_LENGTH:
        return JsonResponse({"message": f"note must be at most {MAX_NOTE_LENGTH} characters"}, status=400)

    order = get_object_or_404(Order, pk=pk)
    try:
        update_order_status(order, status, actor=request.user, note=note)
    except OrderError as e:
        return JsonResponse({"success": False, "message": str(e)}, status=400)

    return JsonResponse({
        "success": True,
        "message": f"Order status updated to {OrderStatus(order.status).label}",
        "order": order_to_dict(order, with_history=True),
    })


@csrf_exempt
@require_POST
@staff_required
def order_cancel_view(request, pk: int):
    body = _json_body(request)
    if body is None:
        return JsonResponse({"message": "Invalid JSON body"}, status=400)
    note = (body.get("note") or body.get("notes") or "").strip()
    if not note:
        return JsonResponse({"message": "note is required"}, status=400)
    if len(note) > MAX_NOTE_LENGTH:
        return JsonResponse({"message": f"note must be at most {MAX_NOTE_LENGTH} characters"}, status=400)

    order = get_object_or_404(Order, pk=pk)
    try:
        cancel_order(order, actor=request.user, note=note)
    except OrderError as e:
        return JsonResponse({"success": False, "message": str(e)}, status=400)

    return JsonResponse({
        "success": True,
        "message": "Order has been cancelled",
        "order": order_to_dict(order, with_history=True),
    })


@login_required
@require_GET
def my_orders_view(request):
    orders = Order.objects.filter(customer=request.user).prefetch_related("items")
    return JsonResponse({"orders": [order_to_dict(o) for o in orders]})


@login_required
@require_GET
def my_order_detail_view(request, pk: int):
    order = get_object_or_404(Order, pk=pk, customer=request.user)
    return JsonResponse({"order": order_to_dict(order, with_history=True)})
