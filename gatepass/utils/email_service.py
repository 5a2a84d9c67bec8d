# utils/email_service.py
"""
Queued email delivery for credential emails.
A single worker thread drains the queue so registration requests never wait on SMTP.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.mime.image import MIMEImage
from flask import current_app, render_template
from datetime import datetime
import threading
import queue
import time

logger = logging.getLogger('email_service')


class EmailStatus:
    QUEUED = 'queued'
    SENDING = 'sending'
    SENT = 'sent'
    FAILED = 'failed'

    def __init__(self, recipient, subject, task_id=None):
        self.recipient = recipient
        self.subject = subject
        self.task_id = task_id or f"email_{int(datetime.now().timestamp())}_{recipient}"
        self.status = self.QUEUED
        self.attempts = 0
        self.last_attempt = None
        self.error = None
        self.timestamp = datetime.now()

    def to_dict(self):
        return {
            'task_id': self.task_id,
            'recipient': self.recipient,
            'subject': self.subject,
            'status': self.status,
            'attempts': self.attempts,
            'timestamp': self.timestamp.isoformat(),
            'last_attempt': self.last_attempt.isoformat() if self.last_attempt else None,
            'error': self.error
        }


class EmailService:
    def __init__(self, app=None):
        self.app = app
        self.worker_thread = None
        self.running = False
        self.task_queue = queue.Queue()
        self.statuses = {}
        self._status_lock = threading.Lock()

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Initialize with Flask app"""
        self.app = app
        app.extensions['email_service'] = self

        if not self.running:
            self.start_worker()

    def start_worker(self):
        """Start the email worker thread"""
        if self.worker_thread is None or not self.worker_thread.is_alive():
            self.running = True
            self.worker_thread = threading.Thread(target=self._process_queue, name='email-worker')
            self.worker_thread.daemon = True
            self.worker_thread.start()

    def stop_worker(self):
        """Stop the email worker thread"""
        self.running = False
        if self.worker_thread:
            self.worker_thread.join(timeout=2.0)

    def _process_queue(self):
        """Process emails from the queue"""
        while self.running:
            try:
                task = self.task_queue.get(timeout=1.0)
            except queue.Empty:
                continue

            task_id = task.get('task_id')
            try:
                self._update_status(task_id, EmailStatus.SENDING)

                with self.app.app_context():
                    self._send_email(task)

                self._update_status(task_id, EmailStatus.SENT)

            except Exception as e:
                logger.error(f"Email sending failed for {task.get('recipient')}: {str(e)}")
                self._update_status(task_id, EmailStatus.FAILED, error=str(e))

                max_attempts = self.app.config.get('MAIL_MAX_ATTEMPTS', 3)
                if task.get('attempts', 0) < max_attempts - 1:
                    task['attempts'] = task.get('attempts', 0) + 1
                    # Exponential backoff before the retry
                    time.sleep(2 ** task['attempts'])
                    self.task_queue.put(task)
            finally:
                self.task_queue.task_done()

    def _update_status(self, task_id, status, error=None):
        with self._status_lock:
            email_status = self.statuses.get(task_id)
            if not email_status:
                return
            email_status.status = status
            if status == EmailStatus.SENDING:
                email_status.attempts += 1
                email_status.last_attempt = datetime.now()
            if error:
                email_status.error = error

    def _send_email(self, task):
        """Send an individual email"""
        config = self.app.config
        recipient = task['recipient']
        subject = task['subject']

        msg = MIMEMultipart('mixed')
        msg['Subject'] = subject
        msg['From'] = config['MAIL_DEFAULT_SENDER']
        msg['To'] = recipient

        body = MIMEMultipart('alternative')
        if task.get('text_body'):
            body.attach(MIMEText(task['text_body'], 'plain'))
        if task.get('html_body'):
            body.attach(MIMEText(task['html_body'], 'html'))
        msg.attach(body)

        for attachment in task.get('attachments', []):
            img = MIMEImage(attachment['content'], _subtype='png')
            img.add_header('Content-Disposition', 'attachment', filename=attachment['filename'])
            if attachment.get('content_id'):
                img.add_header('Content-ID', f"<{attachment['content_id']}>")
            msg.attach(img)

        if config.get('MAIL_SUPPRESS_SEND'):
            logger.info(f"Email delivery suppressed: '{subject}' to {recipient}")
            return

        if config.get('MAIL_USE_SSL'):
            with smtplib.SMTP_SSL(config['MAIL_SERVER'], config['MAIL_PORT']) as server:
                server.login(config['MAIL_USERNAME'], config['MAIL_PASSWORD'])
                server.send_message(msg)
        else:
            with smtplib.SMTP(config['MAIL_SERVER'], config['MAIL_PORT']) as server:
                if config.get('MAIL_USE_TLS'):
                    server.starttls()
                server.login(config['MAIL_USERNAME'], config['MAIL_PASSWORD'])
                server.send_message(msg)

        logger.info(f"Email sent: '{subject}' to {recipient}")

    def queue_email(self, recipient, subject, html_body=None, text_body=None, attachments=None, task_id=None):
        """
        Put an email on the delivery queue.

        Returns:
            str: task id that can be passed to get_email_status
        """
        status = EmailStatus(recipient, subject, task_id)
        with self._status_lock:
            self.statuses[status.task_id] = status

        self.task_queue.put({
            'recipient': recipient,
            'subject': subject,
            'html_body': html_body,
            'text_body': text_body,
            'attachments': attachments or [],
            'task_id': status.task_id,
            'attempts': 0
        })
        return status.task_id

    def send_credential(self, registration, event, image_bytes):
        """
        Queue the credential email for one registration.

        Args:
            registration: Registration model instance
            event: Event the registration belongs to
            image_bytes: PNG rendering of the credential

        Returns:
            str: task id
        """
        task_id = f"credential_{registration.id}_{int(datetime.now().timestamp())}"
        subject = f"Your check-in code for {event.title}"

        context = {
            'registration': registration,
            'event': event,
            'site_name': current_app.config.get('SITE_NAME'),
            'contact_email': current_app.config.get('CONTACT_EMAIL'),
            'timestamp': datetime.now()
        }
        html_body = render_template('emails/credential.html', **context)
        text_body = render_template('emails/credential.txt', **context)

        return self.queue_email(
            recipient=registration.email,
            subject=subject,
            html_body=html_body,
            text_body=text_body,
            attachments=[{
                'content': image_bytes,
                'filename': 'check-in-code.png',
                'content_id': 'credential'
            }],
            task_id=task_id
        )

    def get_email_status(self, task_id):
        """Get status of an email task"""
        with self._status_lock:
            email_status = self.statuses.get(task_id)
            return email_status.to_dict() if email_status else None

    def get_queue_stats(self):
        """Get statistics about the email queue"""
        stats = {
            'queued': 0,
            'sending': 0,
            'sent': 0,
            'failed': 0,
        }

        with self._status_lock:
            stats['total'] = len(self.statuses)
            for email_status in self.statuses.values():
                if email_status.status in stats:
                    stats[email_status.status] += 1

        stats['queue_size'] = self.task_queue.qsize()
        return stats
