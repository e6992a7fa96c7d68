from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from django.contrib.auth.models import User
from .models import Appointment, AppointmentLock, Availability, DoctorProfile, OTP, Payment, UserProfile

# =============================================================================
# 1. USER PROFILE EXTENSION
# =============================================================================

class UserProfileInline(admin.StackedInline):
    """
    Allows editing role and mobile directly inside the standard Django User admin page.
    """
    model = UserProfile
    can_delete = False
    verbose_name_plural = 'User Profile'
    fk_name = 'user'

class UserAdmin(BaseUserAdmin):
    inlines = (UserProfileInline,)
    list_display = ('username', 'email', 'first_name', 'last_name', 'get_role', 'is_staff')

    def get_role(self, obj):
        return obj.profile.role if hasattr(obj, 'profile') else '-'
    get_role.short_description = 'Role'

admin.site.unregister(User)
admin.site.register(User, UserAdmin)

@admin.register(UserProfile)
class UserProfileAdmin(admin.ModelAdmin):
    list_display = ('user', 'role', 'mobile', 'verified_mobile')
    list_filter = ('role', 'verified_mobile')
    search_fields = ('user__username', 'user__email', 'mobile')
    autocomplete_fields = ['user']

@admin.register(OTP)
class OTPAdmin(admin.ModelAdmin):
    list_display = ('mobile', 'user', 'attempts', 'expires_at', 'verified_at')
    search_fields = ('mobile', 'user__username')
    readonly_fields = ('code_hash', 'created_at')


# =============================================================================
# 2. DOCTORS & AVAILABILITY
# =============================================================================

class AvailabilityInline(admin.TabularInline):
    """
    Shows the doctor's working windows directly inside the DoctorProfile admin page.
    """
    model = Availability
    extra = 1

@admin.register(DoctorProfile)
class DoctorProfileAdmin(admin.ModelAdmin):
    list_display = ('__str__', 'clinic_address', 'consultation_fee', 'timezone', 'appointment_count')
    search_fields = ('user__username', 'user__first_name', 'user__last_name', 'clinic_address')
    autocomplete_fields = ['user']
    inlines = [AvailabilityInline]

    def appointment_count(self, obj):
        return obj.appointments.count()
    appointment_count.short_description = 'Appointments'

@admin.register(Availability)
class AvailabilityAdmin(admin.ModelAdmin):
    list_display = ('doctor', 'day_name', 'date', 'start_time', 'end_time', 'slot_duration_mins', 'is_active')
    list_filter = ('day_of_week', 'is_active')
    search_fields = ('doctor__user__username', 'doctor__user__first_name')
    autocomplete_fields = ['doctor']

    def day_name(self, obj):
        return obj.get_day_of_week_display() or '-'
    day_name.short_description = 'Day'

@admin.register(AppointmentLock)
class AppointmentLockAdmin(admin.ModelAdmin):
    list_display = ('id', 'doctor', 'locked_by', 'start_at', 'end_at', 'expires_at')
    search_fields = ('doctor__user__username', 'locked_by__username')


# =============================================================================
# 3. APPOINTMENTS & PAYMENTS
# =============================================================================

class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    readonly_fields = ('payment_provider', 'provider_payment_id', 'status', 'amount', 'currency', 'created_at')
    can_delete = False

@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = (
        'id',
        'start_at',
        'get_patient',
        'doctor',
        'status',
        'payment_status',
        'amount',
    )
    list_filter = (
        'status',
        'payment_status',
        'start_at',
    )
    search_fields = (
        'patient__username', 'patient__email', 'patient__first_name',
        'doctor__user__username', 'doctor__user__first_name',
        'cancellation_reason',
    )
    readonly_fields = ('created_at', 'updated_at')
    autocomplete_fields = ['patient', 'doctor']
    inlines = [PaymentInline]

    fieldsets = (
        ('Participants', {
            'fields': ('patient', 'doctor')
        }),
        ('Schedule', {
            'fields': ('start_at', 'end_at', 'status', 'reminder_sent_at')
        }),
        ('Billing', {
            'fields': ('amount', 'currency', 'payment_status')
        }),
        ('Cancellation', {
            'fields': ('cancelled_at', 'cancellation_reason'),
            'classes': ('collapse',)
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at')
        }),
    )

    def get_patient(self, obj):
        return obj.patient.get_full_name() or obj.patient.username
    get_patient.short_description = 'Patient'

    # --- Custom Actions ---

    @admin.action(description='Mark selected appointments as Completed')
    def mark_completed(self, request, queryset):
        updated = queryset.filter(status=Appointment.STATUS_CONFIRMED).update(status=Appointment.STATUS_COMPLETED)
        self.message_user(request, f"{updated} appointment(s) marked as Completed.")

    actions = [mark_completed]

@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('provider_payment_id', 'appointment', 'status', 'amount', 'currency', 'created_at')
    list_filter = ('status', 'payment_provider')
    search_fields = ('provider_payment_id',)
