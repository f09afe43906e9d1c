from django.contrib import admin

from .models import AccreditationRequest, Area, Employee, Event, Provider, Template, Zone


@admin.register(Event)
class EventAdmin(admin.ModelAdmin):
    list_display = ("name", "location", "start_date", "end_date", "status")
    list_filter = ("status",)
    search_fields = ("name", "location")


@admin.register(Zone)
class ZoneAdmin(admin.ModelAdmin):
    list_display = ("name", "color", "capacity")
    search_fields = ("name",)


@admin.register(Area)
class AreaAdmin(admin.ModelAdmin):
    search_fields = ("name",)


@admin.register(Provider)
class ProviderAdmin(admin.ModelAdmin):
    list_display = ("name", "area", "is_active")
    list_filter = ("area", "is_active")
    search_fields = ("name",)


@admin.register(Employee)
class EmployeeAdmin(admin.ModelAdmin):
    list_display = ("first_name", "last_name", "document_number", "provider")
    list_filter = ("provider",)
    search_fields = ("first_name", "last_name", "document_number")


@admin.register(Template)
class TemplateAdmin(admin.ModelAdmin):
    list_display = ("name", "event", "version", "is_default")
    list_filter = ("event", "is_default")


@admin.register(AccreditationRequest)
class AccreditationRequestAdmin(admin.ModelAdmin):
    list_display = ("uuid", "employee", "event", "status", "approved_at")
    list_filter = ("status", "event")
    search_fields = ("employee__first_name", "employee__last_name", "employee__document_number")
    readonly_fields = ("uuid", "approved_by", "approved_at", "created_at", "updated_at")
