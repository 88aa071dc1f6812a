from branchlms.routers import admin, auth, certificates, courses, health, me, payments, sites

__all__ = [
    "admin",
    "auth",
    "certificates",
    "courses",
    "health",
    "me",
    "payments",
    "sites",
]
