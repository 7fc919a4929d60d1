from django.contrib import admin
from .models import Project, Task, Budget, Comment


@admin.register(Project)
class ProjectAdmin(admin.ModelAdmin):
    list_display = ['name', 'code', 'is_active', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'code']
    ordering = ['name']


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ['title', 'project', 'assignee', 'priority', 'status', 'is_deleted', 'created_at']
    list_filter = ['priority', 'status', 'is_deleted', 'project']
    search_fields = ['title', 'description']
    ordering = ['-created_at']


@admin.register(Budget)
class BudgetAdmin(admin.ModelAdmin):
    list_display = ['name', 'category', 'project', 'amount', 'is_deleted', 'created_at']
    list_filter = ['category', 'is_deleted']
    search_fields = ['name', 'description']
    ordering = ['name']


@admin.register(Comment)
class CommentAdmin(admin.ModelAdmin):
    list_display = ['id', 'author', 'task', 'budget', 'is_deleted', 'created_at']
    list_filter = ['is_deleted', 'created_at']
    search_fields = ['content']
    ordering = ['-created_at']
